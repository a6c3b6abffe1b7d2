"""
Prometheus Metrics
==================

Counters and histograms for the booking core.
"""

from prometheus_client import Counter, Histogram

BOOKING_CREATE_RESULTS = Counter(
    "lodge_booking_create_total",
    "Booking creation attempts by outcome",
    ["result"]  # result: created, unavailable, invalid, lock_timeout, error
)

BOOKING_LOCK_WAIT = Histogram(
    "lodge_booking_lock_wait_seconds",
    "Time spent waiting for a booking lock",
    buckets=[0.001, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0]
)

BOOKING_TRANSITIONS = Counter(
    "lodge_booking_status_transitions_total",
    "Booking status transitions",
    ["from_status", "to_status"]
)

BOOKING_CANCELLATIONS = Counter(
    "lodge_booking_cancellations_total",
    "Booking cancellation attempts",
    ["result"]  # result: cancelled, rejected
)

PAYMENT_EVENTS = Counter(
    "lodge_payment_events_total",
    "Payment events processed",
    ["provider", "event"]
)
