import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "rewrite-proxy")
SERVICE_VERSION = os.getenv("SERVICE_VERSION", "1.0.0")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))

TARGET_URL = os.environ.get("TARGET_URL", "https://api.example.com").rstrip("/")
PROXY_BASE_URL = os.environ.get("PROXY_BASE_URL", f"http://localhost:{PORT}").rstrip(
    "/"
)
# Unset means the upstream call is never cut short by the proxy itself
PROXY_TIMEOUT = (
    float(os.environ["PROXY_TIMEOUT"]) if os.environ.get("PROXY_TIMEOUT") else None
)

REWRITE_HTML_URLS = os.environ.get("REWRITE_HTML_URLS", "true").lower() == "true"
REWRITE_CSS_URLS = os.environ.get("REWRITE_CSS_URLS", "true").lower() == "true"
REWRITE_JS_URLS = os.environ.get("REWRITE_JS_URLS", "true").lower() == "true"
INJECT_SERVICE_WORKER = (
    os.environ.get("INJECT_SERVICE_WORKER", "false").lower() == "true"
)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "rewrite-proxy-secret")
SESSION_COOKIE_NAME = os.environ.get("SESSION_COOKIE_NAME", "rewrite-proxy-session")
SESSION_HEADER_NAME = os.environ.get("SESSION_HEADER_NAME", "x-proxy-session")
# 0 keeps sessions forever
SESSION_IDLE_TIMEOUT = float(os.environ.get("SESSION_IDLE_TIMEOUT", "0"))
SESSION_PURGE_INTERVAL = float(os.environ.get("SESSION_PURGE_INTERVAL", "60"))
HTTPS_ENABLED = os.environ.get("HTTPS_ENABLED", "false").lower() == "true"

COOKIE_WHITELIST = [
    c.strip() for c in os.environ.get("COOKIE_WHITELIST", "").split(",") if c.strip()
]
COOKIE_BLACKLIST = [
    c.strip() for c in os.environ.get("COOKIE_BLACKLIST", "").split(",") if c.strip()
]
STRIP_SECURE = os.environ.get("STRIP_SECURE", "false").lower() == "true"
STRIP_HTTPONLY = os.environ.get("STRIP_HTTPONLY", "false").lower() == "true"

WS_RELAY_PATH = os.environ.get("WS_RELAY_PATH", "/ws-relay")
WS_MAX_CONNECTIONS = int(os.environ.get("WS_MAX_CONNECTIONS", "1000"))
WS_HEARTBEAT_INTERVAL = float(os.environ.get("WS_HEARTBEAT_INTERVAL", "30"))
WS_TIMEOUT = float(os.environ.get("WS_TIMEOUT", "60"))

PROXY_STORE_BACKEND = os.getenv("PROXY_STORE_BACKEND", "InMemoryStore")

CORS_ALLOW_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()
]

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
