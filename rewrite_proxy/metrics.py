from prometheus_client import Counter, Gauge

REWRITE_FAILURES = Counter(
    "proxy_rewrite_failures_total",
    "Payloads returned unmodified because rewriting failed",
    ["content_kind"],
)
COOKIE_RELAY_FAILURES = Counter(
    "proxy_cookie_relay_failures_total",
    "Upstream Set-Cookie values dropped because they could not be parsed",
)
COOKIES_DROPPED_BY_POLICY = Counter(
    "proxy_cookies_dropped_by_policy_total",
    "Upstream cookies dropped by the allow or deny list",
    ["reason"],
)
RELAY_CONNECTIONS_OPEN = Gauge(
    "proxy_relay_connections_open",
    "Relay connections currently registered",
)
RELAY_CONNECTIONS_REJECTED = Counter(
    "proxy_relay_connections_rejected_total",
    "Relay upgrades refused because the registry was full",
)
RELAY_CONNECTIONS_EVICTED = Counter(
    "proxy_relay_connections_evicted_total",
    "Relay connections closed by the heartbeat sweep",
    ["reason"],
)
