import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional, Protocol, Tuple

from src.api.common.errors import ExchangeRateUnavailableError, UnsupportedCurrencyPairError
from src.api.common.utils.datetime import get_current_datetime, is_within
from src.api.common.utils.money import MonetaryBreakdown, Number, round_money, to_decimal
from src.api.exchange_rates.config import ExchangeRateConfig
from src.api.exchange_rates.schemas.exchange_rate import (
    CacheEntryStatus,
    CacheStatus,
    ConvertedAmounts,
    CurrencyPair,
    ExchangeRateSnapshot,
    FeedRate,
    RateCacheEntry,
)

logger = logging.getLogger(__name__)

IDENTITY_PROVIDER = "identity"


class RateFeed(Protocol):
    async def fetch_rate(self, pair: CurrencyPair) -> FeedRate:
        ...


def convert_amounts(breakdown: MonetaryBreakdown, snapshot: ExchangeRateSnapshot) -> ConvertedAmounts:
    """Convert every figure of a breakdown with one rate, rounding each figure."""
    return ConvertedAmounts(
        currency=snapshot.to_currency,
        subtotal=round_money(breakdown.subtotal * snapshot.rate),
        vat_amount=round_money(breakdown.vat_amount * snapshot.rate),
        total_amount=round_money(breakdown.total_amount * snapshot.rate),
    )


class ExchangeRateCache:
    """
    Serves exchange rates with bounded staleness.

    Supported pairs are identity pairs, each configured foreign currency to
    the local currency (fetched from the feed) and the inverse of those.
    Fresh entries are served without network calls; expired entries trigger
    one refresh per pair no matter how many callers are waiting, and a
    failed refresh falls back to the last known value.
    """

    def __init__(self, config: ExchangeRateConfig, feed: RateFeed,
                 clock: Callable[[], datetime] = get_current_datetime):
        self.config = config
        self.feed = feed
        self.clock = clock
        self.ttl = timedelta(hours=config.ttl_hours)
        self._entries: Dict[CurrencyPair, RateCacheEntry] = {}
        self._inflight: Dict[CurrencyPair, asyncio.Future] = {}

    def _resolve_pair(self, from_currency: str, to_currency: str) -> Optional[Tuple[CurrencyPair, bool]]:
        local = self.config.local_currency
        if to_currency == local and from_currency in self.config.currencies:
            return CurrencyPair(from_currency=from_currency, to_currency=local), False
        if from_currency == local and to_currency in self.config.currencies:
            return CurrencyPair(from_currency=to_currency, to_currency=local), True
        return None

    def is_supported(self, from_currency: str, to_currency: str) -> bool:
        from_currency, to_currency = from_currency.upper(), to_currency.upper()
        return from_currency == to_currency or self._resolve_pair(from_currency, to_currency) is not None

    def _is_fresh(self, entry: RateCacheEntry) -> bool:
        return is_within(entry.fetched_at, self.ttl, now=self.clock())

    def _snapshot(self, entry: RateCacheEntry, is_cached: bool, is_stale: bool = False) -> ExchangeRateSnapshot:
        return ExchangeRateSnapshot(
            from_currency=entry.pair.from_currency,
            to_currency=entry.pair.to_currency,
            rate=entry.rate,
            provider=self.config.provider,
            fetched_at=entry.fetched_at,
            as_of=entry.as_of,
            is_cached=is_cached,
            is_stale=is_stale,
        )

    async def get_rate(self, from_currency: str, to_currency: str) -> Optional[ExchangeRateSnapshot]:
        """
        Rate for 1 unit of ``from_currency`` expressed in ``to_currency``.

        Returns:
            The snapshot, or None when the pair is not supported

        Raises:
            ExchangeRateUnavailableError: the feed failed and nothing was ever cached
        """
        from_currency, to_currency = from_currency.upper(), to_currency.upper()

        if from_currency == to_currency:
            return ExchangeRateSnapshot(
                from_currency=from_currency,
                to_currency=to_currency,
                rate=Decimal("1"),
                provider=IDENTITY_PROVIDER,
                fetched_at=self.clock(),
            )

        resolved = self._resolve_pair(from_currency, to_currency)
        if resolved is None:
            logger.warning(f"Unsupported currency conversion: {from_currency} to {to_currency}")
            return None

        pair, inverted = resolved
        snapshot = await self._get_direct_rate(pair)
        if not inverted:
            return snapshot
        return snapshot.model_copy(update={
            "from_currency": snapshot.to_currency,
            "to_currency": snapshot.from_currency,
            "rate": Decimal("1") / snapshot.rate,
        })

    async def _get_direct_rate(self, pair: CurrencyPair) -> ExchangeRateSnapshot:
        entry = self._entries.get(pair)
        if entry is not None and self._is_fresh(entry):
            logger.debug(f"Using cached {pair.key} rate {entry.rate}")
            return self._snapshot(entry, is_cached=True)

        try:
            entry = await self._refresh(pair)
            return self._snapshot(entry, is_cached=False)
        except Exception as e:
            stale = self._entries.get(pair)
            if stale is None:
                logger.error(f"Error fetching {pair.key} rate and no cached value exists: {e}")
                raise ExchangeRateUnavailableError(
                    f"Exchange rate {pair.key} unavailable: {e}", step="exchange_rate")
            logger.warning(
                f"Using stale cached {pair.key} rate {stale.rate} from "
                f"{stale.fetched_at.isoformat()} due to feed failure: {e}")
            return self._snapshot(stale, is_cached=True, is_stale=True)

    async def _refresh(self, pair: CurrencyPair) -> RateCacheEntry:
        # Concurrent callers for the same pair share one in-flight fetch
        future = self._inflight.get(pair)
        if future is None:
            future = asyncio.ensure_future(self._fetch(pair))
            self._inflight[pair] = future
            future.add_done_callback(lambda done, key=pair: self._forget_inflight(key, done))
        return await asyncio.shield(future)

    def _forget_inflight(self, pair: CurrencyPair, future: asyncio.Future) -> None:
        if self._inflight.get(pair) is future:
            del self._inflight[pair]

    async def _fetch(self, pair: CurrencyPair) -> RateCacheEntry:
        logger.info(f"Fetching {pair.key} rate from {self.config.provider}")
        feed_rate = await asyncio.wait_for(
            self.feed.fetch_rate(pair), timeout=self.config.timeout_seconds)
        entry = RateCacheEntry(
            pair=pair,
            rate=feed_rate.rate,
            fetched_at=self.clock(),
            as_of=feed_rate.as_of,
        )
        self._entries[pair] = entry
        logger.info(f"{pair.key} rate fetched successfully: {entry.rate} ({self.config.provider})")
        return entry

    async def convert(self, amount: Number, from_currency: str, to_currency: str) -> Decimal:
        """Convert an amount and round it to 2 decimal places."""
        snapshot = await self.get_rate(from_currency, to_currency)
        if snapshot is None:
            raise UnsupportedCurrencyPairError(
                f"Unsupported currency conversion: {from_currency} to {to_currency}",
                step="exchange_rate")
        return round_money(to_decimal(amount) * snapshot.rate)

    def clear_cache(self) -> None:
        self._entries = {}
        logger.info("Exchange rate cache cleared")

    def get_cache_status(self) -> CacheStatus:
        entries = list(self._entries.values())
        return CacheStatus(
            has_rates=bool(entries),
            ttl_hours=self.config.ttl_hours,
            last_update=max((entry.fetched_at for entry in entries), default=None),
            entries=[
                CacheEntryStatus(
                    pair=entry.pair.key,
                    rate=entry.rate,
                    fetched_at=entry.fetched_at,
                    as_of=entry.as_of,
                    is_fresh=self._is_fresh(entry),
                )
                for entry in entries
            ],
            refreshes_in_flight=[pair.key for pair in self._inflight],
        )
