"""
Lodge Booking Core
==================

Availability, booking transactions, booking lifecycle and payment handling
for the lodge booking backend.
"""

__version__ = "1.0.0"
