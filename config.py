# -*- coding: utf-8 -*-

import os

from dotenv import load_dotenv

load_dotenv()


def _env_str(name: str, default: str = "") -> str:
    value = str(os.getenv(name, "")).strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_list(name: str) -> tuple[str, ...]:
    raw = str(os.getenv(name, "")).strip()
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "")).strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "off", "no"}


PORT = max(1, _env_int("PORT", 3000))
DOMAIN = _env_str("DOMAIN", "example.com")
APP_VERSION = _env_str("APP_VERSION", "1.0.0")

# Backends: "redis" shares queue and status between the API and worker
# processes, "memory" keeps both inside the API process.
JOB_BACKEND = _env_str("JOB_BACKEND", "redis").lower()
if JOB_BACKEND not in {"redis", "memory"}:
    JOB_BACKEND = "redis"
REDIS_URL = _env_str("REDIS_URL", "redis://localhost:6379")
REDIS_QUEUE_NAME = _env_str("REDIS_QUEUE_NAME", "bip353_jobs")
JOB_STATUS_TTL_S = max(1, _env_int("JOB_STATUS_TTL_S", 3600))

# Registry
CLOUDFLARE_API_URL = _env_str("CLOUDFLARE_API_URL", "https://api.cloudflare.com/client/v4")
CLOUDFLARE_API_TOKEN = _env_str("CLOUDFLARE_API_TOKEN")
CLOUDFLARE_ZONE_ID = _env_str("CLOUDFLARE_ZONE_ID")
CLOUDFLARE_TIMEOUT_S = max(1.0, _env_float("CLOUDFLARE_TIMEOUT_S", 10.0))
CLOUDFLARE_RPS = max(1, _env_int("CLOUDFLARE_RPS", 4))
CLOUDFLARE_RPM = max(CLOUDFLARE_RPS, _env_int("CLOUDFLARE_RPM", 240))
DNS_RECORD_TTL = max(60, _env_int("DNS_RECORD_TTL", 300))

# Front door
API_KEYS = _env_list("API_KEYS")
WHITELISTED_IPS = _env_list("WHITELISTED_IPS")
TRUST_PROXY = _env_bool("TRUST_PROXY", True)
ESTIMATED_COMPLETION_S = max(1, _env_int("ESTIMATED_COMPLETION_S", 30))
MAX_REQUEST_BYTES = max(1024, _env_int("MAX_REQUEST_BYTES", 1 << 20))

# Worker
WORKER_MAX_RETRIES = max(0, _env_int("WORKER_MAX_RETRIES", 3))
WORKER_RETRY_DELAY_S = max(0.0, _env_int("WORKER_RETRY_DELAY_MS", 1000) / 1000.0)
WORKER_RETRY_JITTER_S = max(0.0, _env_float("WORKER_RETRY_JITTER_S", 0.0))
WORKER_INFRA_RETRY_DELAY_S = max(0.1, _env_float("WORKER_INFRA_RETRY_DELAY_S", 5.0))
WORKER_INFRA_RETRY_MAX_S = max(WORKER_INFRA_RETRY_DELAY_S, _env_float("WORKER_INFRA_RETRY_MAX_S", 60.0))
# 0 blocks until a job arrives; stop() wakes the pop.
WORKER_POLL_TIMEOUT_S = max(0.0, _env_float("WORKER_POLL_TIMEOUT_S", 0.0))
