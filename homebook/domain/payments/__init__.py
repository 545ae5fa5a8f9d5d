"""Payments domain - Square gateway adapter and webhooks"""
