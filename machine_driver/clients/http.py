import logging
import time
from typing import Any

import httpx


logger = logging.getLogger(__name__)


class RetryPolicy:
    def __init__(self, attempts: int, sleep_sec: float):
        self.attempts = attempts
        self.sleep_sec = sleep_sec


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        path: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
    ):
        self.method = method
        self.path = path
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        super().__init__(
            f"{method} {path} failed after {attempts} attempt(s) ({error_type}: {detail})"
        )

    @property
    def is_transport_error(self) -> bool:
        return self.status_code is None


def _describe_status_error(response: httpx.Response) -> str:
    # Proxmox puts the human readable reason into the status line and
    # per-parameter validation messages into {"errors": {...}}.
    reason = response.reason_phrase or ""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("errors"):
        fields = ", ".join(f"{k}: {v}" for k, v in sorted(body["errors"].items()))
        return f"HTTP {response.status_code} {reason} ({fields})".strip()
    text = (response.text or "").strip()
    if text and not isinstance(body, dict):
        return f"HTTP {response.status_code} {reason}: {text[:240]}".strip()
    return f"HTTP {response.status_code} {reason}".strip()


def request_with_retry(
    client: httpx.Client, method: str, path: str, retry: RetryPolicy, **kwargs: Any
) -> httpx.Response:
    error: Exception | None = None
    status_code: int | None = None
    detail = "unknown error"
    error_type = "RuntimeError"
    for attempt in range(1, retry.attempts + 1):
        try:
            response = client.request(method, path, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            error = exc
            status_code = exc.response.status_code
            detail = _describe_status_error(exc.response)
            error_type = exc.__class__.__name__
        except httpx.RequestError as exc:
            error = exc
            status_code = None
            detail = str(exc) or exc.__class__.__name__
            error_type = exc.__class__.__name__
        logger.debug(
            "request failed method=%s path=%s attempt=%s/%s detail=%s",
            method,
            path,
            attempt,
            retry.attempts,
            detail,
        )
        if attempt < retry.attempts:
            time.sleep(retry.sleep_sec)
    raise RequestFailure(
        method=method,
        path=path,
        attempts=retry.attempts,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
    ) from error


def unwrap_data(response: httpx.Response) -> Any:
    payload = response.json()
    if isinstance(payload, dict):
        return payload.get("data")
    return None
