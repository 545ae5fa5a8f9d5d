"""Fulfillment domains - bookings, dispatch, payments and reconciliation"""
