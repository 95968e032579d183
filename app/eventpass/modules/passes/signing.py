"""
HMAC-SHA256 signatures over pass claims.

The payload is canonicalized (sorted keys, compact separators) before signing so the
same claims always produce the same signature regardless of dict ordering.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


class SigningConfigError(RuntimeError):
    """No signing secret is configured for a partner and there is no system secret."""


def canonical_json(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(dict(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def sign(payload: Mapping[str, Any], secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), canonical_json(payload), hashlib.sha256).digest()
    return b64url(digest)


def verify(payload: Mapping[str, Any], signature: str, secret: str) -> bool:
    if not isinstance(signature, str) or not signature:
        return False
    expected = sign(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", errors="replace"))


@dataclass(frozen=True)
class SigningKeys:
    """
    Signing secrets resolved once at startup.

    `partner_secrets` maps partner id (as a string) to that tenant's secret; the system
    secret is the fallback.
    """

    system_secret: str = ""
    partner_secrets: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SigningKeys":
        partner = {str(k): str(v) for k, v in (config.get("PASS_PARTNER_SECRETS") or {}).items() if v}
        return cls(system_secret=str(config.get("PASS_SIGNING_SECRET") or ""), partner_secrets=partner)

    @property
    def configured(self) -> bool:
        return bool(self.system_secret or self.partner_secrets)

    def resolve(self, partner_id: int | str | None) -> str:
        if partner_id is not None:
            secret = self.partner_secrets.get(str(partner_id))
            if secret:
                return secret
        if self.system_secret:
            return self.system_secret
        raise SigningConfigError(
            f"No pass signing secret for partner {partner_id!r}: set PASS_PARTNER_{partner_id}_SECRET or PASS_SIGNING_SECRET."
        )


def signing_keys_from_app(app=None) -> SigningKeys:
    from flask import current_app

    app = app or current_app
    keys = app.extensions.get("pass_signing_keys")
    if keys is None:
        keys = SigningKeys.from_config(app.config)
        app.extensions["pass_signing_keys"] = keys
    return keys
