from __future__ import annotations

import hashlib
import hmac
import json
import time
import urllib.error
import urllib.request
import uuid
from dataclasses import dataclass
from typing import Any


class WebhookError(RuntimeError):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def sign_body(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class WebhookClient:
    url: str
    secret: str | None = None
    timeout_seconds: int = 10
    max_retries: int = 3
    backoff_seconds: float = 1.0

    def post_json(self, event_type: str, timestamp: str, payload: dict[str, Any]) -> int:
        """POST the payload; returns the HTTP status. Retries network errors and 5xx."""
        body = json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")
        delivery_id = uuid.uuid4().hex

        last_err: Exception | None = None
        for attempt in range(self.max_retries + 1):
            req = urllib.request.Request(self.url, data=body, method="POST")
            req.add_header("Content-Type", "application/json")
            req.add_header("User-Agent", "EventPass-Webhook/1.0")
            req.add_header("X-EventPass-Event", event_type)
            req.add_header("X-EventPass-Timestamp", timestamp)
            req.add_header("X-EventPass-Delivery", delivery_id)
            if self.secret:
                req.add_header("X-EventPass-Signature", "sha256=" + sign_body(body, self.secret))
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    return int(resp.status)
            except urllib.error.HTTPError as e:
                if e.code < 500:
                    raise WebhookError(f"HTTP {e.code} from webhook {self.url}", status=e.code) from e
                last_err = e
            except (urllib.error.URLError, OSError) as e:
                last_err = e
            if attempt < self.max_retries:
                # exponential backoff: 1s, 2s, 4s, ...
                time.sleep(self.backoff_seconds * (2 ** attempt))
        status = last_err.code if isinstance(last_err, urllib.error.HTTPError) else None
        raise WebhookError(f"Webhook delivery to {self.url} failed after retries: {last_err}", status=status)
