import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "render-health-wrapper")
LOG_LEVEL = os.getenv("LOG_LEVEL", "info").upper()

# Public listener
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8080"))
HEALTH_PATH = os.environ.get("HEALTH_PATH", "/health")

# Backend, bound to loopback only
GATEWAY_HOST = os.environ.get("GATEWAY_HOST", "127.0.0.1")
GATEWAY_PORT = int(os.environ.get("GATEWAY_PORT", "18789"))
GATEWAY_COMMAND = os.environ.get(
    "GATEWAY_COMMAND", "node openclaw.mjs gateway --allow-unconfigured --port {port}"
)
GATEWAY_READY_MARKERS = [
    m for m in os.environ.get("GATEWAY_READY_MARKERS", "listening,started,bound").split(",") if m
]

# Settings file read by the backend on startup
GATEWAY_STATE_DIR = os.path.expanduser(
    os.environ.get("GATEWAY_STATE_DIR", "~/.openclaw")
)
GATEWAY_CONFIG_FILE = os.environ.get("GATEWAY_CONFIG_FILE", "openclaw.json")
GATEWAY_TRUSTED_PROXIES = [
    p.strip()
    for p in os.environ.get("GATEWAY_TRUSTED_PROXIES", "127.0.0.1,::1").split(",")
    if p.strip()
]

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
