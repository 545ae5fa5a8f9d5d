"""Reconciliation domain - Periodic convergence with the payment gateway"""
