from prometheus_client import Counter, Gauge

OFFERS_CREATED = Counter(
    "dispatch_offers_created_total",
    "Total courier offers created",
    ["assignment_type"]
)

OFFERS_RESOLVED = Counter(
    "dispatch_offers_resolved_total",
    "Total courier offers resolved",
    ["outcome"]
)

STATUS_TRANSITIONS = Counter(
    "dispatch_order_status_transitions_total",
    "Total committed order status transitions",
    ["status"]
)

LOCATION_PINGS = Counter(
    "dispatch_location_pings_total",
    "Total courier location pings ingested"
)

ACTIVE_SUBSCRIPTIONS = Gauge(
    "dispatch_active_subscriptions",
    "Current number of real-time channel subscriptions"
)
