"""
Compact QR payload codec.

Wire format (before base64url, padding stripped):
    {"v": 1, "eid": "<event>", "pid": "<pass>", "gid": "<guest>", "exp": <unix>, "sig": "<hmac>"}

`gid` and `exp` are optional and omitted when unset. Only the canonical encoding is
accepted, so every distinct string maps to a distinct payload. `decode` never raises:
it returns either `Decoded` or `Malformed(reason)`.
"""
from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.eventpass.constants import PAYLOAD_VERSION
from app.eventpass.utils import to_unix, utcnow

MAX_PAYLOAD_LENGTH = 4096


@dataclass(frozen=True)
class PassClaims:
    eid: str
    pid: str
    gid: str | None = None
    exp: int | None = None
    v: int = PAYLOAD_VERSION

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"v": self.v, "eid": self.eid, "pid": self.pid}
        if self.gid is not None:
            d["gid"] = self.gid
        if self.exp is not None:
            d["exp"] = self.exp
        return d


@dataclass(frozen=True)
class Decoded:
    claims: PassClaims
    signature: str


@dataclass(frozen=True)
class Malformed:
    reason: str

    @property
    def expired(self) -> bool:
        return self.reason == "expired"


def encode(claims: PassClaims, signature: str) -> str:
    body = dict(claims.to_dict())
    body["sig"] = signature
    raw = json.dumps(body, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def decode(raw: Any, now: datetime | None = None) -> Decoded | Malformed:
    if not isinstance(raw, str):
        return Malformed("payload is not a string")
    raw = raw.strip()
    if not raw:
        return Malformed("empty payload")
    if len(raw) > MAX_PAYLOAD_LENGTH:
        return Malformed("payload too long")

    try:
        padded = raw + "=" * (-len(raw) % 4)
        data = base64.b64decode(padded, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError):
        return Malformed("bad base64")
    if base64.urlsafe_b64encode(data).decode("ascii").rstrip("=") != raw:
        return Malformed("non-canonical encoding")

    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return Malformed("invalid json")
    if not isinstance(obj, dict):
        return Malformed("payload is not an object")

    for key in ("v", "eid", "pid", "sig"):
        if key not in obj:
            return Malformed(f"missing field {key}")
    v, eid, pid, sig = obj["v"], obj["eid"], obj["pid"], obj["sig"]
    if not _is_int(v):
        return Malformed("field v must be an integer")
    if v != PAYLOAD_VERSION:
        return Malformed(f"unsupported version {v}")
    if not isinstance(eid, str) or not eid:
        return Malformed("field eid must be a non-empty string")
    if not isinstance(pid, str) or not pid:
        return Malformed("field pid must be a non-empty string")
    if not isinstance(sig, str) or not sig:
        return Malformed("field sig must be a non-empty string")

    gid = obj.get("gid")
    if gid is not None and not isinstance(gid, str):
        return Malformed("field gid must be a string")
    exp = obj.get("exp")
    if exp is not None and not _is_int(exp):
        return Malformed("field exp must be an integer")

    if exp is not None and exp < to_unix(now or utcnow()):
        return Malformed("expired")

    return Decoded(claims=PassClaims(eid=eid, pid=pid, gid=gid, exp=exp, v=v), signature=sig)
