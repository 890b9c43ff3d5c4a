"""Issue, rotate or list API credentials for a party.

Usage:
    python scripts/issue_credentials.py <party_id> [--rotate | --list]

The secret is printed once and is not recoverable afterwards. ``--list``
shows key ids and their state, never secrets.
"""

import argparse
import asyncio

from payagent.config import config, validate_config_for_service
from payagent.core.credentials import CredentialManager
from payagent.database import db
from payagent.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, "text")
logger = get_logger(__name__)


async def list_credentials(manager: CredentialManager, party_id: str) -> None:
    credentials = await manager.list_for_party(party_id)
    if not credentials:
        print(f"No credentials for {party_id}")
        return

    for credential, usable in credentials:
        if credential.revoked_at:
            state = f"revoked {credential.revoked_at.isoformat()}"
        elif not usable:
            state = "expired"
        elif credential.grace_until:
            state = f"active until {credential.grace_until.isoformat()} (rotated)"
        else:
            state = f"active until {credential.expires_at.isoformat()}"
        print(f"{credential.key_id}  {state}")


async def main(party_id: str, rotate: bool, list_only: bool) -> None:
    validate_config_for_service("cli")
    await db.initialize()

    manager = CredentialManager(database=db)
    if list_only:
        await list_credentials(manager, party_id)
        return

    issued = await (manager.rotate(party_id) if rotate else manager.issue(party_id))

    print(f"API key id: {issued.api_key_id}")
    print(f"API secret: {issued.api_secret}")
    print(f"Expires at: {issued.expires_at.isoformat()}")
    if rotate:
        print(f"Previous keys stay valid for {manager.grace_seconds}s")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("party_id")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--rotate", action="store_true", help="Supersede existing credentials")
    mode.add_argument("--list", dest="list_only", action="store_true", help="Show existing key ids")
    args = parser.parse_args()
    asyncio.run(main(args.party_id, args.rotate, args.list_only))
