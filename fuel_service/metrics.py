from prometheus_client import Counter

ORDER_TRANSITIONS = Counter(
    "order_transitions_total",
    "Order status changes, by target status",
    ["status"]
)

ORDER_ACCEPT_CONFLICTS = Counter(
    "order_accept_conflicts_total",
    "Accept attempts that lost the claim race"
)

LOCATION_REPORTS = Counter(
    "location_reports_total",
    "Location samples stored"
)

GEOFENCE_ARRIVALS = Counter(
    "geofence_arrivals_total",
    "Geofence checks that found the driver inside the arrival radius"
)

PAYMENT_WEBHOOK_EVENTS = Counter(
    "payment_webhook_events_total",
    "Authenticated payment webhook events",
    ["event_type", "outcome"]
)

RATINGS_SUBMITTED = Counter(
    "ratings_submitted_total",
    "Driver ratings stored"
)
