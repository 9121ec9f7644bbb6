from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

REQUESTS_TOTAL = Counter(
    "requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
JOINS_TOTAL = Counter("joins_total", "Session join attempts", ["outcome"])
ANSWERS_TOTAL = Counter("answers_total", "Scored answer submissions", ["correct"])
REACTIONS_TOTAL = Counter("reactions_total", "Reactions appended to sessions")
PHASE_TRANSITIONS_TOTAL = Counter("phase_transitions_total", "Session phase transitions", ["phase"])
ACTIVE_SESSIONS = Gauge("active_sessions", "Number of live quiz sessions")
ACTIVE_SUBSCRIPTIONS = Gauge("active_subscriptions", "Number of session change subscriptions")
WS_CONNECTIONS = Gauge("ws_connections", "Open session WebSocket connections")


__all__ = [
    "CONTENT_TYPE_LATEST",
    "REQUESTS_TOTAL",
    "JOINS_TOTAL",
    "ANSWERS_TOTAL",
    "REACTIONS_TOTAL",
    "PHASE_TRANSITIONS_TOTAL",
    "ACTIVE_SESSIONS",
    "ACTIVE_SUBSCRIPTIONS",
    "WS_CONNECTIONS",
    "generate_latest",
]
