"""HMAC request signing.

A caller holding an API key id and secret signs::

    timestamp + "\\n" + METHOD + "\\n" + path + "\\n" + sha256(body)

with HMAC-SHA256 and sends ``x-api-key-id``, ``x-timestamp`` (unix seconds)
and ``x-signature`` (hex). Requests outside the replay window are rejected
before the signature is even looked at.
"""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Optional, Union

from payagent.config import config
from payagent.core.encryption import SecretCipher, secret_cipher
from payagent.core.prices import Clock, SystemClock
from payagent.database import Database, db
from payagent.exceptions import (
    CredentialExpiredError,
    DecryptionError,
    InvalidSignatureError,
    MissingCredentialsError,
    StaleTimestampError,
    UnknownKeyError,
)
from payagent.logging_utils import get_logger
from payagent.models import AuthCredential

logger = get_logger(__name__)

Body = Union[bytes, str, None]


def _body_bytes(body: Body) -> bytes:
    if body is None:
        return b""
    if isinstance(body, str):
        return body.encode("utf-8")
    return body


def build_string_to_sign(timestamp: str, method: str, path: str, body: Body) -> str:
    body_hash = hashlib.sha256(_body_bytes(body)).hexdigest()
    return f"{timestamp}\n{method.upper()}\n{path}\n{body_hash}"


def compute_signature(secret: str, string_to_sign: str) -> str:
    return hmac.new(secret.encode(), string_to_sign.encode(), hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str) -> bool:
    """Constant-time comparison of two hex signatures.

    Non-hex input or a length mismatch is simply a mismatch.
    """
    try:
        expected_bytes = bytes.fromhex(expected)
        provided_bytes = bytes.fromhex(provided)
    except (TypeError, ValueError):
        return False
    return hmac.compare_digest(expected_bytes, provided_bytes)


def sign_request(secret: str, timestamp: str, method: str, path: str, body: Body = None) -> str:
    return compute_signature(secret, build_string_to_sign(timestamp, method, path, body))


class RequestAuthenticator:
    """Authenticates signed requests against stored credentials."""

    def __init__(
        self,
        database: Optional[Database] = None,
        cipher: Optional[SecretCipher] = None,
        clock: Optional[Clock] = None,
        window_seconds: Optional[int] = None,
    ):
        self.database = database or db
        self.cipher = cipher or secret_cipher
        self.clock = clock or SystemClock()
        self.window_seconds = window_seconds if window_seconds is not None else config.signature_window_seconds

    def check_timestamp(self, timestamp: str) -> None:
        try:
            ts = int(timestamp)
        except (TypeError, ValueError) as e:
            raise StaleTimestampError("Timestamp must be unix seconds") from e

        if abs(self.clock.now() - ts) > self.window_seconds:
            raise StaleTimestampError("Request timestamp outside the allowed window")

    async def authenticate(
        self,
        key_id: Optional[str],
        timestamp: Optional[str],
        signature: Optional[str],
        method: str,
        path: str,
        body: Body,
    ) -> AuthCredential:
        """Authenticate one request.

        Returns:
            The credential that signed the request.

        Raises:
            AuthenticationError: Any failure; nothing is partially trusted.
        """
        if not key_id or not timestamp or not signature:
            raise MissingCredentialsError("Missing x-api-key-id, x-timestamp or x-signature header")

        self.check_timestamp(timestamp)

        credential = await self.database.get_credential(key_id)
        if credential is None:
            raise UnknownKeyError("Invalid API key")

        now = datetime.fromtimestamp(self.clock.now(), tz=timezone.utc)
        if not credential.is_usable(now):
            raise CredentialExpiredError("API key expired or revoked")

        try:
            secret = self.cipher.decrypt(credential.secret_encrypted)
        except DecryptionError:
            logger.error(f"Stored secret for {key_id} failed to decrypt")
            raise

        expected = sign_request(secret, timestamp, method, path, body)
        if not signatures_match(expected, signature):
            raise InvalidSignatureError("Invalid signature")

        return credential
