"""PayAgent exception hierarchy.

Verification mismatches are not exceptions: they come back as a
``VerificationResult`` with a failure reason.
"""

from datetime import datetime
from typing import Optional


class PayAgentError(Exception):
    """PayAgent base exception"""

    pass


class ConfigurationError(PayAgentError):
    """Request refers to something this deployment does not support"""

    pass


class UnsupportedNetworkError(ConfigurationError):
    """Network name does not resolve, or has no RPC endpoint"""

    def __init__(self, network: str, reason: str = "unsupported network"):
        self.network = network
        super().__init__(f"{reason}: {network!r}")


class UnsupportedTokenError(ConfigurationError):
    """Token symbol has no contract on the network"""

    def __init__(self, symbol: str, network: str):
        self.symbol = symbol
        self.network = network
        super().__init__(f"Token {symbol!r} is not supported on {network!r}")


class UnsupportedAssetError(ConfigurationError):
    """Asset has no price source"""

    pass


class RpcError(PayAgentError):
    """JSON-RPC call failed (transport, timeout or node error)"""

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        self.method = method
        self.code = code
        super().__init__(f"{method} failed: {message}")


class PriceUnavailableError(PayAgentError):
    """Price source returned nothing usable"""

    pass


class AuthenticationError(PayAgentError):
    """Request could not be authenticated"""

    pass


class MissingCredentialsError(AuthenticationError):
    pass


class StaleTimestampError(AuthenticationError):
    """Timestamp outside the replay window"""

    pass


class UnknownKeyError(AuthenticationError):
    pass


class CredentialExpiredError(AuthenticationError):
    """Credential expired, revoked, or past its rotation grace window"""

    pass


class InvalidSignatureError(AuthenticationError):
    pass


class DecryptionError(AuthenticationError):
    """Stored secret is malformed or failed GCM authentication"""

    pass


class UnsafeUrlError(PayAgentError):
    """Webhook URL is not HTTPS or resolves to a non-public address"""

    pass


class NotFoundError(PayAgentError):
    pass


class TransactionAlreadyUsedError(PayAgentError):
    """Transaction hash already settled another payment request"""

    def __init__(self, tx_hash: str):
        self.tx_hash = tx_hash
        super().__init__(f"Transaction {tx_hash} was already used for another payment")


class AlreadySettledError(PayAgentError):
    """Payment request is no longer pending"""

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Payment request {request_id} is already {status}")


class RequestExpiredError(PayAgentError):
    """Payment request passed its expiry time before it was paid"""

    def __init__(self, request_id: str, expires_at: datetime):
        self.request_id = request_id
        self.expires_at = expires_at
        super().__init__(f"Payment request {request_id} expired at {expires_at.isoformat()}")
