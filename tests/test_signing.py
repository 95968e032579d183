"""Tests for pass signatures and signing key resolution."""
import base64

import pytest

from app.eventpass.modules.passes.signing import SigningConfigError, SigningKeys, canonical_json, sign, verify


def test_canonical_json_ignores_key_order():
    assert canonical_json({"b": 1, "a": "x"}) == canonical_json({"a": "x", "b": 1})
    assert canonical_json({"a": "x", "b": 1}) == b'{"a":"x","b":1}'


def test_sign_and_verify_round_trip():
    claims = {"v": 1, "eid": "7", "pid": "42", "gid": "3"}
    sig = sign(claims, "s3cret")
    assert "=" not in sig
    assert verify(claims, sig, "s3cret") is True


def test_verify_rejects_tampering():
    claims = {"v": 1, "eid": "7", "pid": "42"}
    sig = sign(claims, "s3cret")

    assert verify({**claims, "pid": "43"}, sig, "s3cret") is False
    assert verify(claims, sig, "other-secret") is False
    assert verify(claims, "", "s3cret") is False


def test_verify_rejects_every_single_bit_flip():
    claims = {"v": 1, "eid": "7", "pid": "42", "gid": "3", "exp": 1780000000}
    sig = sign(claims, "s3cret")
    digest = base64.urlsafe_b64decode(sig + "=")
    assert len(digest) == 32

    for bit in range(len(digest) * 8):
        flipped = bytearray(digest)
        flipped[bit // 8] ^= 1 << (bit % 8)
        forged = base64.urlsafe_b64encode(bytes(flipped)).decode("ascii").rstrip("=")
        assert forged != sig
        assert verify(claims, forged, "s3cret") is False, bit


def test_resolve_prefers_partner_secret():
    keys = SigningKeys(system_secret="system", partner_secrets={"5": "partner-five"})
    assert keys.resolve(5) == "partner-five"
    assert keys.resolve("5") == "partner-five"
    assert keys.resolve(6) == "system"
    assert keys.resolve(None) == "system"


def test_resolve_without_any_secret_raises():
    keys = SigningKeys(partner_secrets={"5": "partner-five"})
    assert keys.resolve(5) == "partner-five"
    with pytest.raises(SigningConfigError):
        keys.resolve(6)
    assert SigningKeys().configured is False


def test_from_config_drops_empty_partner_secrets():
    keys = SigningKeys.from_config({"PASS_SIGNING_SECRET": "sys", "PASS_PARTNER_SECRETS": {"1": "one", "2": ""}})
    assert keys.system_secret == "sys"
    assert dict(keys.partner_secrets) == {"1": "one"}


def test_partner_secrets_read_from_environment(monkeypatch):
    from app.eventpass.config import load_config

    monkeypatch.setenv("PASS_SIGNING_SECRET", "sys")
    monkeypatch.setenv("PASS_PARTNER_12_SECRET", "twelve")
    cfg = load_config()
    assert cfg["PASS_PARTNER_SECRETS"]["12"] == "twelve"
    assert SigningKeys.from_config(cfg).resolve(12) == "twelve"
