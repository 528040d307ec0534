from prometheus_client import Counter, Gauge

ORDER_TRANSITIONS = Counter(
    "order_transitions_total",
    "Order status transitions applied",
    ["to_status"]
)

DELIVERY_TRANSITIONS = Counter(
    "delivery_transitions_total",
    "Delivery status transitions applied",
    ["to_status"]
)

DISPATCH_OFFERS = Counter(
    "dispatch_offers_total",
    "Driver offers by outcome",
    ["outcome"]
)

ACTIVE_SEARCHES = Gauge(
    "dispatch_active_searches",
    "Deliveries currently searching for a driver"
)

LOCATION_POINTS = Counter(
    "location_points_total",
    "Driver location points ingested",
    ["flag"]
)

PAYMENT_CAPTURES = Counter(
    "payment_captures_total",
    "Capture confirmations by result",
    ["result"]
)
