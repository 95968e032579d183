"""Outbound partner webhooks (pass generated, check-in valid / invalid)."""
