"""Operator commands for blocked verifications and locked accounts.

Examples:
    python scripts/manage_access.py reset-verification --identifier bob@x.com
    python scripts/manage_access.py unlock --account-id 42
"""

import argparse
import asyncio
import logging

from portier.core.database import AsyncSessionLocal
from portier.core.errors import PortierError
from portier.core.logging_config import setup_logging
from portier.domain.accounts.services import unlock_account
from portier.domain.identity.services import parse_identifier
from portier.domain.security.services import security_log
from portier.domain.verification.services import VerificationIssuer
from portier.services.notifications import notification_sender

logger = logging.getLogger("portier.scripts.manage_access")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Unblock verifications and unlock accounts")
    sub = parser.add_subparsers(dest="command", required=True)

    reset = sub.add_parser("reset-verification", help="Clear the attempt counter for an email or phone")
    reset.add_argument("--identifier", required=True)
    reset.add_argument("--kind", choices=["email", "phone"], default=None)

    unlock = sub.add_parser("unlock", help="Lift a failed-login lock")
    unlock.add_argument("--account-id", type=int, required=True)
    return parser.parse_args()


async def reset_verification(identifier: str, kind: str | None) -> bool:
    value, resolved = parse_identifier(identifier, kind)
    async with AsyncSessionLocal() as session:
        cleared = await VerificationIssuer(session, notification_sender).reset_attempts(value, resolved.value)
    await security_log.record(None, "verification_reset", "success", details={"by": "cli", "kind": resolved.value})
    return cleared


async def unlock(account_id: int) -> None:
    async with AsyncSessionLocal() as session:
        await unlock_account(session, account_id)
    await security_log.record(account_id, "account_unlocked", "success", details={"by": "cli"})


async def main(args: argparse.Namespace) -> int:
    try:
        if args.command == "reset-verification":
            cleared = await reset_verification(args.identifier, args.kind)
            print("Verification cleared" if cleared else "Nothing pending for that identifier")
        else:
            await unlock(args.account_id)
            print(f"Account {args.account_id} unlocked")
    except PortierError as exc:
        logger.error("%s: %s", exc.error_code, exc.message)
        return 1
    return 0


if __name__ == "__main__":
    setup_logging()
    raise SystemExit(asyncio.run(main(parse_args())))
