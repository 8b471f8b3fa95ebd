"""CLI tool for admin operations.

Usage:
    python -m profit_service.cli create-admin
    python -m profit_service.cli run <investment|live_trade> [ISO-8601 timestamp]
    python -m profit_service.cli reconcile
"""

import asyncio
import getpass
import json
import sys
from datetime import datetime, timezone

from sqlmodel import Session, select

from profit_service.database import engine, create_db_and_tables
from profit_service.engine.coordinator import get_coordinator
from profit_service.engine.errors import RunAbortedError
from profit_service.models.operator import Operator
from profit_service.services.auth import hash_password, generate_totp_secret, get_totp_uri
from profit_service.services.reconciliation import reconcile_balances
from profit_service.utils.constants import PositionKind, RunTrigger
from profit_service.utils.logging import setup_logging


def create_admin():
    """Create an operator account with TOTP setup."""
    create_db_and_tables()

    username = input("Username: ").strip()
    if not username:
        print("Username cannot be empty.")
        sys.exit(1)

    with Session(engine) as session:
        existing = session.exec(select(Operator).where(Operator.username == username)).first()
        if existing:
            print(f"Operator '{username}' already exists.")
            sys.exit(1)

    password = getpass.getpass("Password: ")
    password_confirm = getpass.getpass("Confirm password: ")
    if password != password_confirm:
        print("Passwords do not match.")
        sys.exit(1)

    totp_secret = generate_totp_secret()
    totp_uri = get_totp_uri(totp_secret, username)

    operator = Operator(
        username=username,
        hashed_password=hash_password(password),
        totp_secret=totp_secret,
    )

    with Session(engine) as session:
        session.add(operator)
        session.commit()

    print(f"\nOperator '{username}' created successfully.")
    print(f"\nTOTP Secret: {totp_secret}")
    print(f"TOTP URI: {totp_uri}")


def run(kind: str, when: str | None = None):
    """Run one manual distribution for ``kind`` and print the summary as JSON."""
    try:
        kind = PositionKind(kind)
    except ValueError:
        print(f"Unknown kind: {kind} (expected one of: {', '.join(k.value for k in PositionKind)})")
        sys.exit(1)

    now = datetime.fromisoformat(when) if when else datetime.now(timezone.utc)
    create_db_and_tables()

    try:
        result = asyncio.run(
            get_coordinator().run_distribution(kind, now, trigger=RunTrigger.MANUAL, operator="cli")
        )
    except RunAbortedError as e:
        print(json.dumps({**e.result.to_dict(), "error_class": e.error_class}, default=str, indent=2))
        sys.exit(2)

    print(json.dumps(result.to_dict(), default=str, indent=2))


def reconcile():
    """Print balance discrepancies; exit non-zero if any are found."""
    with Session(engine) as session:
        discrepancies = reconcile_balances(session)

    if not discrepancies:
        print("All profit balances match the distribution ledger.")
        return

    for d in discrepancies:
        print(
            f"owner {d.owner_id}: balance={d.profit_accrued} ledger={d.ledger_total} "
            f"difference={d.difference}"
        )
    sys.exit(3)


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m profit_service.cli <command>")
        print("Commands: create-admin, run <kind> [timestamp], reconcile")
        sys.exit(1)

    setup_logging()
    command = sys.argv[1]
    if command == "create-admin":
        create_admin()
    elif command == "run":
        if len(sys.argv) < 3:
            print("Usage: python -m profit_service.cli run <investment|live_trade> [timestamp]")
            sys.exit(1)
        run(sys.argv[2], sys.argv[3] if len(sys.argv) > 3 else None)
    elif command == "reconcile":
        reconcile()
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
