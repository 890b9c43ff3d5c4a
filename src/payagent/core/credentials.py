"""API credential issuance and rotation.

Key ids are public (``pk_live_…``); secrets (``sk_live_…``) are shown to the
caller exactly once and stored encrypted.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from payagent.config import config
from payagent.core.encryption import SecretCipher, secret_cipher
from payagent.core.prices import Clock, SystemClock
from payagent.database import Database, db
from payagent.logging_utils import get_logger
from payagent.models import AuthCredential, IssuedCredential

logger = get_logger(__name__)

KEY_ID_PREFIX = "pk_live_"
SECRET_PREFIX = "sk_live_"


def generate_key_pair() -> tuple[str, str]:
    return KEY_ID_PREFIX + secrets.token_hex(16), SECRET_PREFIX + secrets.token_hex(32)


class CredentialManager:
    """Issues, rotates and revokes API credentials for a party."""

    def __init__(
        self,
        database: Optional[Database] = None,
        cipher: Optional[SecretCipher] = None,
        clock: Optional[Clock] = None,
        expiry_days: Optional[int] = None,
        grace_seconds: Optional[int] = None,
    ):
        self.database = database or db
        self.cipher = cipher or secret_cipher
        self.clock = clock or SystemClock()
        self.expiry_days = expiry_days if expiry_days is not None else config.api_key_expiry_days
        self.grace_seconds = (
            grace_seconds if grace_seconds is not None else config.credential_rotation_grace_seconds
        )

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock.now(), tz=timezone.utc)

    def _new_credential(self, party_id: str) -> tuple[AuthCredential, IssuedCredential]:
        now = self._now()
        key_id, secret = generate_key_pair()
        expires_at = now + timedelta(days=self.expiry_days)
        credential = AuthCredential(
            key_id=key_id,
            party_id=party_id,
            secret_encrypted=self.cipher.encrypt(secret),
            expires_at=expires_at,
            created_at=now,
        )
        return credential, IssuedCredential(api_key_id=key_id, api_secret=secret, expires_at=expires_at)

    async def issue(self, party_id: str) -> IssuedCredential:
        """Issue an additional credential without touching existing ones."""
        credential, issued = self._new_credential(party_id)
        await self.database.create_credential(credential)
        return issued

    async def rotate(self, party_id: str) -> IssuedCredential:
        """Issue a replacement credential.

        Previously active credentials keep authenticating until the grace
        window elapses, so in-flight clients can switch over.
        """
        credential, issued = self._new_credential(party_id)
        grace_until = credential.created_at + timedelta(seconds=self.grace_seconds)
        superseded = await self.database.rotate_credential(credential, grace_until)
        logger.info(f"Credential rotation for {party_id}: {superseded} old key(s) valid until {grace_until.isoformat()}")
        return issued

    async def list_for_party(self, party_id: str) -> list[tuple[AuthCredential, bool]]:
        """Stored credentials, oldest first, each with whether it authenticates right now."""
        now = self._now()
        credentials = await self.database.list_credentials(party_id)
        return [(credential, credential.is_usable(now)) for credential in credentials]

    async def revoke_all(self, party_id: str) -> int:
        return await self.database.revoke_credentials(party_id, self._now())
