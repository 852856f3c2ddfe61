from __future__ import annotations

import json
import logging
import socket
from typing import Any
from urllib import error as urllib_error
from urllib import request as urllib_request

from assistant_kernel.logging_setup import component_logger

DEFAULT_RELAY_TIMEOUT_SECONDS = 30.0
RESPONSE_ECHO_LIMIT = 1200


class RelayError(RuntimeError):
    """Raised when the execution runtime rejects or never receives a relayed payload."""


class RelayClient:
    """POST JSON payloads to the external execution runtime."""

    def __init__(
        self,
        endpoint: str,
        *,
        api_key: str | None = None,
        timeout: float = DEFAULT_RELAY_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.endpoint = endpoint.strip()
        self.api_key = (api_key or "").strip()
        self.timeout = timeout
        self._logger = component_logger("relay", logger)

    def post(self, payload: dict[str, Any]) -> str:
        """Send the payload; returns the response body, raises RelayError otherwise."""
        if not self.endpoint:
            raise RelayError("relay endpoint is not configured")
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "assistant-kernel/0.1",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        req = urllib_request.Request(
            self.endpoint,
            data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        request_id = str(payload.get("request_id") or "-")
        try:
            with urllib_request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                status = int(getattr(resp, "status", 200))
                body = resp.read().decode("utf-8", errors="ignore")
        except urllib_error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore") if exc.fp is not None else ""
            self._log_failure(request_id, f"http {exc.code}")
            raise RelayError(f"relay returned HTTP {exc.code}: {detail[:300]}".rstrip(": ")) from exc
        except (urllib_error.URLError, socket.timeout, TimeoutError, OSError) as exc:
            self._log_failure(request_id, repr(exc))
            raise RelayError(f"relay request failed: {exc}") from exc

        if not 200 <= status < 300:
            self._log_failure(request_id, f"http {status}")
            raise RelayError(f"relay returned HTTP {status}: {body[:300]}")
        self._logger.info(
            "relay delivered",
            extra={"event": "relay_delivered", "context": {"request_id": request_id, "status": status}},
        )
        return body[:RESPONSE_ECHO_LIMIT]

    def _log_failure(self, request_id: str, reason: str) -> None:
        self._logger.warning(
            "relay failed",
            extra={"event": "relay_failed", "context": {"request_id": request_id, "reason": reason}},
        )
