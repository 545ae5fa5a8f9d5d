"""Dispatch domain - Binding bookings to workers"""
