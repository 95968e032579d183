"""Tests for the QR payload codec."""
import base64
import json
from datetime import datetime, timedelta

from app.eventpass.modules.passes.payload import Decoded, Malformed, PassClaims, decode, encode
from app.eventpass.modules.passes.signing import sign, verify
from app.eventpass.utils import to_unix


def _raw(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode("utf-8")).decode("ascii").rstrip("=")


def test_encode_decode_round_trip_omits_optional_fields():
    claims = PassClaims(eid="1", pid="2")
    raw = encode(claims, "sig")
    assert "=" not in raw
    body = json.loads(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)))
    assert set(body) == {"v", "eid", "pid", "sig"}

    out = decode(raw)
    assert isinstance(out, Decoded)
    assert out.claims == claims
    assert out.signature == "sig"


def test_decode_keeps_guest_and_expiry():
    now = datetime(2026, 5, 1, 12, 0, 0)
    exp = to_unix(now + timedelta(hours=1))
    out = decode(encode(PassClaims(eid="1", pid="2", gid="9", exp=exp), "sig"), now)
    assert isinstance(out, Decoded)
    assert out.claims.gid == "9"
    assert out.claims.exp == exp


def test_decode_malformed_inputs():
    cases = [
        None,
        "",
        "   ",
        "not base64 !!",
        "x" * 5000,
        base64.urlsafe_b64encode(b"not json").decode(),
        _raw([1, 2, 3]),
        _raw({"v": 1, "eid": "1", "pid": "2"}),
        _raw({"v": 2, "eid": "1", "pid": "2", "sig": "s"}),
        _raw({"v": True, "eid": "1", "pid": "2", "sig": "s"}),
        _raw({"v": 1, "eid": 1, "pid": "2", "sig": "s"}),
        _raw({"v": 1, "eid": "1", "pid": "", "sig": "s"}),
        _raw({"v": 1, "eid": "1", "pid": "2", "sig": "s", "exp": "soon"}),
        _raw({"v": 1, "eid": "1", "pid": "2", "sig": "s", "gid": 5}),
    ]
    for raw in cases:
        out = decode(raw)
        assert isinstance(out, Malformed), raw
        assert not out.expired


def test_decode_past_expiry_is_reported_as_expired():
    now = datetime(2026, 5, 1, 12, 0, 0)
    raw = encode(PassClaims(eid="1", pid="2", exp=to_unix(now - timedelta(seconds=1))), "sig")
    out = decode(raw, now)
    assert isinstance(out, Malformed)
    assert out.expired


def test_decode_rejects_non_canonical_trailing_bits():
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
    raw = next(r for r in (encode(PassClaims(eid="1", pid="2"), s) for s in ("s", "si", "sig")) if len(r) % 4 in (2, 3))
    assert isinstance(decode(raw), Decoded)

    # the lowest bit of the final character carries no data when the length is not a multiple of 4
    twin = raw[:-1] + alphabet[alphabet.index(raw[-1]) ^ 1]
    assert base64.urlsafe_b64decode(twin + "=" * (-len(twin) % 4)) == base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
    out = decode(twin)
    assert isinstance(out, Malformed)
    assert out.reason == "non-canonical encoding"
    assert isinstance(decode(raw + "=="), Malformed)


def test_no_single_character_change_yields_a_verifiable_payload():
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
    now = datetime(2026, 5, 1, 12, 0, 0)
    claims = PassClaims(eid="12", pid="345", gid="67", exp=to_unix(now + timedelta(days=1)))
    raw = encode(claims, sign(claims.to_dict(), "s3cret"))

    for i, ch in enumerate(raw):
        for alt in alphabet:
            if alt == ch:
                continue
            out = decode(raw[:i] + alt + raw[i + 1:], now)
            if isinstance(out, Decoded):
                assert not verify(out.claims.to_dict(), out.signature, "s3cret"), (i, alt)
