"""Settlement fee computation.

The payer's on-chain balance of the incentive token decides how the fee is
paid:

- balance >= flat fee: the flat fee is paid in the incentive token on top of
  the payment, split between platform and creator by the configured ratio.
- otherwise: the fee is carved out of the payment itself, converted from the
  flat incentive-token amount at the current USD price.

Only an unresolvable network is a hard failure. Balance and price problems
degrade (zero balance, stale or fallback price) so a quote is always produced.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from payagent.config import config
from payagent.core.chains import (
    get_token_address,
    get_token_decimals,
    is_native_token,
    resolve_network,
)
from payagent.core.prices import PriceOracle, TtlCache, price_oracle
from payagent.core.rpc import RpcClient
from payagent.database import Database, db
from payagent.exceptions import UnsupportedNetworkError
from payagent.logging_utils import get_logger
from payagent.models import FeeConfig, FeeQuote, utcnow

logger = get_logger(__name__)

EVEN_SPLIT = Decimal("0.5")


def default_fee_config() -> FeeConfig:
    return FeeConfig(
        incentive_token=config.incentive_token.upper(),
        flat_fee_amount=Decimal(config.flat_fee_amount),
        platform_share=Decimal(config.flat_fee_platform_share),
        creator_reward=Decimal(config.flat_fee_creator_reward),
        treasury_wallet=config.treasury_wallet,
    )


class FeeConfigProvider:
    """Fee configuration from the database, cached for a minute."""

    CACHE_KEY = "default"

    def __init__(self, database: Optional[Database] = None, cache: Optional[TtlCache[FeeConfig]] = None):
        self.database = database or db
        self.cache = cache if cache is not None else TtlCache(config.fee_config_cache_ttl_seconds)

    async def get(self) -> FeeConfig:
        cached = self.cache.get_fresh(self.CACHE_KEY)
        if cached is not None:
            return cached

        try:
            stored = await self.database.get_fee_config()
        except Exception as e:
            logger.error(f"Fee config fetch error: {e}")
            stored = None

        fee_config = stored or default_fee_config()
        self.cache.put(self.CACHE_KEY, fee_config)
        return fee_config

    async def update(self, **updates) -> FeeConfig:
        """Persist a validated copy of the current config with ``updates`` applied.

        Raises:
            pydantic.ValidationError: If an updated field has the wrong type.
        """
        current = await self.get()
        updated = FeeConfig.model_validate({**current.model_dump(), **updates, "updated_at": utcnow()})
        await self.database.save_fee_config(updated)
        self.cache.invalidate()
        return updated


def quantize(amount: Decimal, decimals: int) -> Decimal:
    return amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)


def split_fee(total: Decimal, platform_ratio: Decimal, decimals: int) -> tuple[Decimal, Decimal, Decimal]:
    """Round ``total`` and split it so the shares sum to it exactly.

    The platform share is rounded; the creator share takes the remainder.
    """
    total = quantize(total, decimals)
    platform = quantize(total * platform_ratio, decimals)
    creator = total - platform
    return total, platform, creator


class FeeEngine:
    """Computes FeeQuotes from on-chain balance and price data."""

    def __init__(
        self,
        config_provider: Optional[FeeConfigProvider] = None,
        oracle: Optional[PriceOracle] = None,
        rpc_factory: Callable[[str], RpcClient] = RpcClient.for_network,
    ):
        self.config_provider = config_provider or FeeConfigProvider()
        self.oracle = oracle or price_oracle
        self.rpc_factory = rpc_factory

    async def incentive_balance(self, payer_wallet: Optional[str], network: str, fee_config: FeeConfig) -> Decimal:
        """Payer's incentive-token balance; 0 whenever it cannot be read."""
        token = fee_config.incentive_token
        token_address = get_token_address(network, token)

        if not payer_wallet or not token_address:
            return Decimal("0")

        try:
            rpc = self.rpc_factory(network)
            raw = await rpc.erc20_balance_of(token_address, payer_wallet)
        except Exception as e:
            logger.warning(f"{token} balance check failed for {payer_wallet} on {network}: {e}")
            return Decimal("0")

        return Decimal(raw).scaleb(-get_token_decimals(network, token))

    async def compute_fee(self, payer_wallet: Optional[str], network: str, payment_token: str) -> FeeQuote:
        """Compute the settlement fee for a payment.

        Args:
            payer_wallet: Wallet whose incentive-token balance is checked.
            network: Network name or alias.
            payment_token: Symbol of the token the payment is made in.

        Returns:
            FeeQuote with shares that sum exactly to ``fee_total``.

        Raises:
            UnsupportedNetworkError: If the network does not resolve.
        """
        canonical = resolve_network(network)
        if canonical is None:
            raise UnsupportedNetworkError(network)

        fee_config = await self.config_provider.get()
        incentive = fee_config.incentive_token
        payment_token = payment_token.upper()
        flat = fee_config.flat_fee_amount

        balance = await self.incentive_balance(payer_wallet, canonical, fee_config)

        if balance >= flat:
            total, platform, creator = split_fee(
                flat, fee_config.platform_ratio, get_token_decimals(canonical, incentive)
            )
            return FeeQuote(
                network=canonical,
                payment_token=payment_token,
                fee_token=incentive,
                fee_total=total,
                platform_share=platform,
                creator_reward=creator,
                source_price=None,
                payer_incentive_balance=balance,
                deducted_from_payment=False,
            )

        if payment_token == incentive:
            # Already denominated in the incentive token: no conversion
            total, platform, creator = split_fee(
                flat, fee_config.platform_ratio, get_token_decimals(canonical, incentive)
            )
            return FeeQuote(
                network=canonical,
                payment_token=payment_token,
                fee_token=incentive,
                fee_total=total,
                platform_share=platform,
                creator_reward=creator,
                source_price=None,
                payer_incentive_balance=balance,
                deducted_from_payment=True,
            )

        incentive_price = await self.oracle.price_usd(incentive)
        fee_usd = flat * incentive_price

        if is_native_token(payment_token, canonical):
            native_price = await self.oracle.price_usd(payment_token)
            fee_amount = fee_usd / native_price
        else:
            fee_amount = fee_usd

        total, platform, creator = split_fee(
            fee_amount, EVEN_SPLIT, get_token_decimals(canonical, payment_token)
        )

        logger.info(
            f"Deducted fee for {payer_wallet} on {canonical}: {total} {payment_token} "
            f"({incentive} balance {balance}, {incentive} price {incentive_price})"
        )

        return FeeQuote(
            network=canonical,
            payment_token=payment_token,
            fee_token=payment_token,
            fee_total=total,
            platform_share=platform,
            creator_reward=creator,
            source_price=incentive_price,
            payer_incentive_balance=balance,
            deducted_from_payment=True,
        )
