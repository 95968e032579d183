from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from flask import current_app, has_app_context

from app.eventpass.constants import (
    CHECK_IN_WEBHOOK_TIMEOUT_SECONDS,
    TEST_WEBHOOK_TIMEOUT_SECONDS,
    WEBHOOK_EVENTS,
    WEBHOOK_TEST_EVENT,
)
from app.eventpass.modules.events.models import Partner
from app.eventpass.modules.webhooks.client import WebhookClient, WebhookError

logger = logging.getLogger(__name__)


def webhook_enabled(partner: Partner | None, event_type: str) -> bool:
    if partner is None or not (partner.webhook_url or "").strip():
        return False
    enabled = partner.webhook_events or []
    return not enabled or event_type in enabled


def build_payload(event_type: str, data: dict[str, Any], *, now: datetime | None = None) -> dict[str, Any]:
    ts = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    return {"event": event_type, "timestamp": ts, "data": data}


def send_webhook(
    partner: Partner | None,
    event_type: str,
    data: dict[str, Any],
    *,
    timeout_seconds: int | None = None,
    max_retries: int | None = None,
) -> bool:
    """
    Deliver one webhook to the partner if configured and enabled for this event type.
    Call after the database commit. Delivery failures are logged; never raised.
    """
    if event_type not in WEBHOOK_EVENTS:
        raise ValueError(f"Unknown webhook event type: {event_type}")
    if not webhook_enabled(partner, event_type):
        return False

    if has_app_context():
        if timeout_seconds is None:
            timeout_seconds = int(current_app.config.get("WEBHOOK_TIMEOUT_SECONDS") or 10)
        if max_retries is None:
            max_retries = int(current_app.config.get("WEBHOOK_MAX_RETRIES") or 3)

    payload = build_payload(event_type, data)
    client = WebhookClient(
        url=partner.webhook_url.strip(),
        secret=partner.webhook_secret or None,
        timeout_seconds=timeout_seconds if timeout_seconds is not None else 10,
        max_retries=max_retries if max_retries is not None else 3,
    )
    try:
        status = client.post_json(event_type, payload["timestamp"], payload)
    except (WebhookError, ValueError) as e:
        logger.warning("Webhook %s to partner %s failed: %s", event_type, partner.id, e)
        return False
    logger.info("Webhook %s delivered to partner %s (status=%s)", event_type, partner.id, status)
    return True


def notify_pass_generated(partner: Partner | None, passes: list[dict[str, Any]], *, event_id: int) -> bool:
    if not passes:
        return False
    return send_webhook(partner, "on_pass_generated", {"event_id": event_id, "count": len(passes), "passes": passes})


def notify_check_in(partner: Partner | None, outcome_data: dict[str, Any]) -> bool:
    event_type = "on_check_in_valid" if outcome_data.get("result") == "valid" else "on_check_in_invalid"
    return send_webhook(
        partner,
        event_type,
        outcome_data,
        timeout_seconds=CHECK_IN_WEBHOOK_TIMEOUT_SECONDS,
        max_retries=0,
    )


def send_test_webhook(
    url: str,
    secret: str | None,
    *,
    data: dict[str, Any] | None = None,
    timeout_seconds: int = TEST_WEBHOOK_TIMEOUT_SECONDS,
) -> tuple[bool, int | None, str]:
    """
    Send a single test delivery so a partner can check their endpoint.
    Returns (success, http_status, message); no retries.
    """
    body = {"test": True, "message": "This is a test webhook from EventPass"}
    body.update(data or {})
    payload = build_payload(WEBHOOK_TEST_EVENT, body)
    client = WebhookClient(url=url.strip(), secret=secret or None, timeout_seconds=timeout_seconds, max_retries=0)
    try:
        status = client.post_json(WEBHOOK_TEST_EVENT, payload["timestamp"], payload)
    except (WebhookError, ValueError) as e:
        logger.info("Test webhook to %s failed: %s", url, e)
        return False, getattr(e, "status", None), str(e)
    return True, status, f"Webhook delivered (HTTP {status})"
