"""Payship: order payment reconciliation and delivery routing service."""

__version__ = "1.0.0"
