"""
Seed roles, permissions and the first owner account (idempotent).

Does NOT overwrite an existing owner's password.

Usage:
  python scripts/init_db.py
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.eventpass.constants import ROLE_OWNER  # noqa: E402
from app.eventpass.models import User  # noqa: E402
from app.eventpass.rbac import ensure_roles_and_permissions  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def seed_only(*, database_url: str | None = None) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "owner@eventpass.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///eventpass.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        roles = ensure_roles_and_permissions(s)
        owner_role = roles[ROLE_OWNER]

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, name="Owner", password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if owner_role not in user.roles:
            user.roles.append(owner_role)

    print("Initialized database (seed_only).")
    print(f"Owner email: {admin_email}")
    print("Owner password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
