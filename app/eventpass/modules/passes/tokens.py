from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.eventpass.modules.passes.models import Pass

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
MAX_TOKEN_ATTEMPTS = 5
_HEX_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")


class TokenGenerationError(RuntimeError):
    pass


def generate_token(nbytes: int = TOKEN_BYTES) -> str:
    """Random hex token (64 chars for the default 32 bytes)."""
    return secrets.token_hex(nbytes)


def is_token(value: str | None) -> bool:
    return bool(value) and bool(_HEX_TOKEN_RE.match(value or ""))


def generate_unique_token(
    s: Session,
    *,
    max_attempts: int = MAX_TOKEN_ATTEMPTS,
    generator: Callable[[], str] = generate_token,
) -> str:
    """Token not present on any pass. Tokens are globally unique, hence unique per event too."""
    for attempt in range(max_attempts):
        token = generator()
        exists = s.execute(select(Pass.id).where(Pass.token == token)).first()
        if exists is None:
            return token
        logger.warning("Pass token collision (attempt %s/%s); regenerating", attempt + 1, max_attempts)
    raise TokenGenerationError(f"Failed to generate a unique pass token after {max_attempts} attempts")
