#!/usr/bin/env python3
"""Grant a role to an existing account (idempotent), optionally binding it to a partner.

Usage:
  python scripts/grant_role.py --email staff@example.com --role gate_staff --partner-id 3
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.eventpass.constants import ROLE_OWNER, ROLES  # noqa: E402
from app.eventpass.models import Role, User  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="Account email")
    parser.add_argument("--role", required=True, choices=ROLES)
    parser.add_argument("--partner-id", type=int, default=None, help="Tenant for non-owner roles")
    args = parser.parse_args()

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///eventpass.db").strip()
    with script_session(db_url) as s:
        user = s.query(User).filter(User.email.ilike(args.email)).one_or_none()
        if not user:
            print(f"User not found: {args.email}")
            return
        role = s.query(Role).filter(Role.key == args.role).one_or_none()
        if not role:
            print(f"Role {args.role} not found. Run python scripts/init_db.py first.")
            return
        if args.role != ROLE_OWNER:
            if args.partner_id is None and user.partner_id is None:
                print("--partner-id is required for non-owner roles.")
                return
            if args.partner_id is not None:
                user.partner_id = args.partner_id
        if role in (user.roles or []):
            print(f"User already has role {args.role}: {args.email}")
            return
        user.roles.append(role)
    print(f"Role {args.role} granted to {args.email}")


if __name__ == "__main__":
    main()
