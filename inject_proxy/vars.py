import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "inject-proxy")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000") or "3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "info").lower()

# Front-end tier (load balancer / ingress) whose X-Forwarded-* headers are trusted
FORWARDED_ALLOW_IPS = os.getenv("FORWARDED_ALLOW_IPS", "*")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")

# Empty keeps every path proxied to the upstream
METRICS_PATH = os.getenv("METRICS_PATH", "")
