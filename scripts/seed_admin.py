#!/usr/bin/env python3
"""
Create the platform admin account that receives auction commissions.

Usage:
    python3 scripts/seed_admin.py [username] [email]

Prints the account id; set it as PLATFORM_ACCOUNT_ID to pin commission
payouts to this account.
"""

import os
import sys

from dotenv import load_dotenv

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables
load_dotenv()

from database import Account, SessionLocal, init_db  # noqa: E402


def seed_admin(db, username: str = "admin", email: str = None) -> Account:
    """Return the admin account with this username, creating or promoting it."""
    account = db.query(Account).filter(Account.username == username).first()
    if account is None:
        account = Account(username=username, email=email, is_admin=True)
        db.add(account)
    elif not account.is_admin:
        account.is_admin = True
    db.commit()
    db.refresh(account)
    return account


def main():
    username = sys.argv[1] if len(sys.argv) > 1 else "admin"
    email = sys.argv[2] if len(sys.argv) > 2 else None

    init_db()
    db = SessionLocal()
    try:
        account = seed_admin(db, username, email)
        print(f"Platform admin account: {account.username} (id {account.id})")
        print(f"Set PLATFORM_ACCOUNT_ID={account.id} to route commissions to it.")
    except Exception as e:
        db.rollback()
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
