"""Runtime off-ramp settings.

Admins can override the exchange rate, the enabled flag and the NGN limits
through the ``platform_settings`` table. Reads are cached in-process so the
pipeline does not hit the database for every conversion.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from offramp.config import get_settings
from offramp.errors import AmountLimitError, OfframpDisabledError
from offramp.fees import DEFAULT_TIERS, FeeCalculator, FeeSchedule, FeeTier
from offramp.ledger.repository import OfframpRepository

logger = logging.getLogger(__name__)

EXCHANGE_RATE_KEY = "offramp_exchange_rate"
ENABLED_KEY = "offramp_transactions_enabled"
MINIMUM_KEY = "offramp_minimum_ngn"
MAXIMUM_KEY = "offramp_maximum_ngn"

SETTING_KEYS = (EXCHANGE_RATE_KEY, ENABLED_KEY, MINIMUM_KEY, MAXIMUM_KEY)


@dataclass(frozen=True)
class OfframpSettings:
    """Effective runtime settings."""

    exchange_rate: Decimal
    enabled: bool
    minimum_ngn: Decimal
    maximum_ngn: Decimal

    def check_enabled(self) -> None:
        if not self.enabled:
            raise OfframpDisabledError("Off-ramp transactions are currently disabled")

    def check_limits(self, ngn_amount: Decimal) -> None:
        """Raise AmountLimitError if ``ngn_amount`` is out of bounds."""
        if ngn_amount < self.minimum_ngn:
            raise AmountLimitError(
                f"Amount NGN {ngn_amount} is below the minimum of NGN {self.minimum_ngn}"
            )
        if ngn_amount > self.maximum_ngn:
            raise AmountLimitError(
                f"Amount NGN {ngn_amount} is above the maximum of NGN {self.maximum_ngn}"
            )

    def to_dict(self) -> dict:
        return {
            "exchange_rate": str(self.exchange_rate),
            "enabled": self.enabled,
            "minimum_ngn": str(self.minimum_ngn),
            "maximum_ngn": str(self.maximum_ngn),
        }


def _parse_decimal(value: Optional[str], default: Decimal, key: str) -> Decimal:
    if value is None:
        return default
    try:
        return Decimal(value)
    except InvalidOperation:
        logger.warning(f"Ignoring invalid {key} setting {value!r}")
        return default


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class OfframpSettingsService:
    """Database-backed settings with environment defaults and a TTL cache."""

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds is None:
            ttl_seconds = get_settings().settings_cache_seconds
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cached: Optional[OfframpSettings] = None
        self._cached_at = 0.0
        self._schedule: Optional[FeeSchedule] = None
        self._schedule_at = 0.0

    def _fresh(self, loaded_at: float) -> bool:
        return self._clock() - loaded_at < self.ttl_seconds

    def invalidate(self) -> None:
        self._cached = None
        self._schedule = None

    async def get(self, repo: OfframpRepository) -> OfframpSettings:
        """Effective settings, from cache when fresh."""
        if self._cached is not None and self._fresh(self._cached_at):
            return self._cached

        defaults = get_settings()
        stored = await repo.get_all_settings()
        self._cached = OfframpSettings(
            exchange_rate=_parse_decimal(
                stored.get(EXCHANGE_RATE_KEY), defaults.offramp_exchange_rate, EXCHANGE_RATE_KEY
            ),
            enabled=_parse_bool(stored.get(ENABLED_KEY), defaults.offramp_enabled),
            minimum_ngn=_parse_decimal(
                stored.get(MINIMUM_KEY), defaults.offramp_minimum_ngn, MINIMUM_KEY
            ),
            maximum_ngn=_parse_decimal(
                stored.get(MAXIMUM_KEY), defaults.offramp_maximum_ngn, MAXIMUM_KEY
            ),
        )
        self._cached_at = self._clock()
        return self._cached

    async def update(self, repo: OfframpRepository, **values) -> OfframpSettings:
        """Persist overrides and drop the cache.

        Accepts ``exchange_rate``, ``enabled``, ``minimum_ngn`` and ``maximum_ngn``.
        """
        keys = {
            "exchange_rate": EXCHANGE_RATE_KEY,
            "enabled": ENABLED_KEY,
            "minimum_ngn": MINIMUM_KEY,
            "maximum_ngn": MAXIMUM_KEY,
        }
        for name, value in values.items():
            if value is None:
                continue
            if name not in keys:
                raise ValueError(f"Unknown setting {name}")
            if name == "exchange_rate" and Decimal(str(value)) <= 0:
                raise ValueError("Exchange rate must be positive")
            stored = str(value).lower() if isinstance(value, bool) else str(value)
            await repo.set_setting(keys[name], stored)
            logger.info(f"Setting {keys[name]} updated to {stored}")

        self.invalidate()
        return await self.get(repo)

    async def fee_schedule(self, repo: OfframpRepository) -> FeeSchedule:
        """Fee schedule from the ``fee_tiers`` table, or the built-in tiers."""
        if self._schedule is not None and self._fresh(self._schedule_at):
            return self._schedule

        records = await repo.get_fee_tiers()
        if records:
            self._schedule = FeeSchedule(
                FeeTier(
                    min_amount=Decimal(str(r.min_amount)),
                    max_amount=Decimal(str(r.max_amount)) if r.max_amount is not None else None,
                    percentage=Decimal(str(r.percentage)),
                    name=r.tier_name or "",
                )
                for r in records
            )
        else:
            self._schedule = FeeSchedule(DEFAULT_TIERS)
        self._schedule_at = self._clock()
        return self._schedule

    async def fee_calculator(self, repo: OfframpRepository) -> FeeCalculator:
        return FeeCalculator(await self.fee_schedule(repo))
