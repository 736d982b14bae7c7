"""Cloudflare DNS client publishing BIP353 TXT records for the worker."""
from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional

import httpx

from config import (
    CLOUDFLARE_API_TOKEN,
    CLOUDFLARE_API_URL,
    CLOUDFLARE_RPM,
    CLOUDFLARE_RPS,
    CLOUDFLARE_TIMEOUT_S,
    CLOUDFLARE_ZONE_ID,
    DNS_RECORD_TTL,
    DOMAIN,
)
from jobs.executor import ExecutionFailure, ExecutionOutcome, ExecutionSuccess
from jobs.models import JobPayload
from observability.logger import get_logger

LOGGER = get_logger("bip353.services.registry")

# Cloudflare: "An identical record already exists."
IDENTICAL_RECORD_EXISTS = 81058
RETRYABLE_STATUS_CODES = frozenset({408, 429})


class RateLimiter:
    """Sliding-window limiter enforcing both per-second and per-minute caps."""

    def __init__(
        self,
        *,
        rps: int,
        rpm: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._rps = max(1, rps)
        self._rpm = max(self._rps, rpm)
        self._clock = clock
        self._sleep = sleep
        self._per_second: deque[float] = deque()
        self._per_minute: deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            with self._lock:
                now = self._clock()
                self._trim(now)
                if len(self._per_second) < self._rps and len(self._per_minute) < self._rpm:
                    self._per_second.append(now)
                    self._per_minute.append(now)
                    return
                wait_options: List[float] = []
                if len(self._per_second) >= self._rps:
                    wait_options.append(1.0 - (now - self._per_second[0]))
                if len(self._per_minute) >= self._rpm:
                    wait_options.append(60.0 - (now - self._per_minute[0]))
            delay = max(0.05, max(wait_options) if wait_options else 0.05)
            self._sleep(delay)

    def _trim(self, now: float) -> None:
        while self._per_second and now - self._per_second[0] >= 1.0:
            self._per_second.popleft()
        while self._per_minute and now - self._per_minute[0] >= 60.0:
            self._per_minute.popleft()


class CloudflareExecutor:
    """Executor creating ``<user>.user._bitcoin-payment.<domain>`` TXT records."""

    def __init__(
        self,
        *,
        api_token: str = CLOUDFLARE_API_TOKEN,
        zone_id: str = CLOUDFLARE_ZONE_ID,
        domain: str = DOMAIN,
        base_url: str = CLOUDFLARE_API_URL,
        timeout_s: float = CLOUDFLARE_TIMEOUT_S,
        record_ttl: int = DNS_RECORD_TTL,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not api_token or not zone_id:
            raise ValueError("CLOUDFLARE_API_TOKEN and CLOUDFLARE_ZONE_ID are required")
        self._zone_id = zone_id
        self._domain = domain
        self._record_ttl = record_ttl
        self._limiter = rate_limiter or RateLimiter(rps=CLOUDFLARE_RPS, rpm=CLOUDFLARE_RPM)
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_s),
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def __enter__(self) -> "CloudflareExecutor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    @property
    def _records_path(self) -> str:
        return f"/zones/{self._zone_id}/dns_records"

    def record_name(self, username: str) -> str:
        return f"{username}.user._bitcoin-payment.{self._domain}"

    @staticmethod
    def record_content(offer: str) -> str:
        return f'"bitcoin:?lno={offer}"'

    def execute(self, payload: JobPayload) -> ExecutionOutcome:
        name = self.record_name(payload.username)
        content = self.record_content(payload.offer)
        body = {"type": "TXT", "name": name, "content": content, "ttl": self._record_ttl}

        try:
            self._limiter.acquire()
            response = self._client.post(self._records_path, json=body)
        except httpx.TimeoutException as exc:
            LOGGER.error("registry_timeout", extra={"username": payload.username, "error": str(exc)})
            return ExecutionFailure("Timed out while creating DNS record", retryable=True)
        except httpx.TransportError as exc:
            LOGGER.error("registry_network_error", extra={"username": payload.username, "error": str(exc)})
            return ExecutionFailure("Network error occurred while creating DNS record", retryable=True)

        data = _json_body(response)
        if response.is_success and data.get("success"):
            record_id = (data.get("result") or {}).get("id")
            if record_id:
                return ExecutionSuccess(record_id=str(record_id))
            return ExecutionFailure("Registry response did not include a record id", retryable=True)

        errors = data.get("errors") or []
        if any(_error_code(err) == IDENTICAL_RECORD_EXISTS for err in errors):
            return self._resolve_existing(payload, name, content)

        message = _format_errors(errors) or f"Registry returned HTTP {response.status_code}"
        retryable = _is_retryable_status(response.status_code)
        LOGGER.error(
            "registry_rejected",
            extra={
                "username": payload.username,
                "status_code": response.status_code,
                "errors": errors,
                "retryable": retryable,
            },
        )
        return ExecutionFailure(message, retryable=retryable)

    def _resolve_existing(self, payload: JobPayload, name: str, content: str) -> ExecutionOutcome:
        # An earlier attempt may have created the record before its response was lost.
        try:
            record_id = self.find_record(name, content)
        except httpx.HTTPError as exc:
            LOGGER.warning("registry_lookup_failed", extra={"username": payload.username, "error": str(exc)})
            return ExecutionFailure("Failed to look up existing DNS record", retryable=True)
        if record_id:
            LOGGER.info("registry_record_reused", extra={"username": payload.username, "record_id": record_id})
            return ExecutionSuccess(record_id=record_id)
        return ExecutionFailure(f"A conflicting DNS record already exists for {name}", retryable=False)

    def find_record(self, name: str, content: str) -> Optional[str]:
        self._limiter.acquire()
        response = self._client.get(self._records_path, params={"type": "TXT", "name": name})
        response.raise_for_status()
        wanted = content.strip('"')
        for record in _json_body(response).get("result") or []:
            if str(record.get("content", "")).strip('"') == wanted:
                return str(record.get("id"))
        return None


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_code(error: Any) -> Optional[int]:
    if not isinstance(error, dict):
        return None
    try:
        return int(error.get("code"))
    except (TypeError, ValueError):
        return None


def _format_errors(errors: List[Any]) -> str:
    parts = []
    for error in errors:
        if isinstance(error, dict):
            parts.append(f"{error.get('message', 'unknown error')} ({error.get('code')})")
        else:
            parts.append(str(error))
    return ", ".join(parts)


def _is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


__all__ = ["CloudflareExecutor", "RateLimiter", "IDENTICAL_RECORD_EXISTS"]
