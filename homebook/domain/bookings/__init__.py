"""Bookings domain - Booking lifecycle state machine and payment ledger"""
