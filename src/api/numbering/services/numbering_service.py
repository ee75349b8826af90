import asyncio
import logging
import secrets
import threading
import time
from typing import Dict, List, Optional, Tuple

from src.api.common.errors import NumberingError
from src.api.numbering.config import NumberingConfig
from src.api.numbering.schemas.series_counter import AllocatedNumber, CounterRead, CounterSource
from src.api.numbering.services.counter_store import CounterStore

logger = logging.getLogger(__name__)


class UnknownSeriesError(NumberingError):
    """The in-process counter only knows the configured series"""


def format_invoice_number(series: str, value: int) -> str:
    return f"{series}-{value}"


class NumberingService:
    """
    Allocates strictly increasing invoice numbers per series.

    The durable counter store is the primary path. When it is missing or
    failing, configured series fall back to an in-process counter guarded by
    a single lock. Numbers issued that way are never issued again by the
    store: each durable increment carries the in-process high-water mark as
    a floor, which also covers increments that committed after their call
    timed out. The fallback is only correct for single-instance
    deployments: two instances falling back at the same time will hand out
    the same numbers. Unknown series fall back to a timestamp number.
    """

    def __init__(self, config: NumberingConfig, store: Optional[CounterStore] = None):
        self.config = config
        self.store = store
        self._lock = threading.Lock()
        # Highest value handed out by the in-process counter. The durable
        # store is moved past it once it answers again.
        self._counters: Dict[str, int] = {}
        # Highest value seen from the durable store, so a later fallback
        # continues after it instead of restarting at the start number
        self._last_durable: Dict[str, int] = {}

        if store is None:
            logger.warning(
                "No durable counter store configured: invoice numbers come from an "
                "in-process counter and are NOT unique across service instances")

    def ensure_safe_for_deployment(self) -> None:
        """Refuse to start without a durable store when one is required."""
        if self.store is None and self.config.require_durable_store:
            raise RuntimeError(
                "A durable counter store is required (NUMBERING_REQUIRE_DURABLE_STORE) "
                "but NUMBERING_STORE is not 'database'")

    async def _call_store(self, func, *args):
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args), timeout=self.config.timeout_seconds)

    async def next(self, series: str) -> int:
        """Next integer of ``series``."""
        value, _ = await self._next_with_source(series)
        return value

    async def _next_with_source(self, series: str) -> Tuple[int, CounterSource]:
        if self.store is not None:
            start = self.config.start_for(series)
            if start is None:
                start = self.config.default_start_number
            with self._lock:
                floor = self._counters.get(series)
            try:
                value = await self._call_store(self.store.increment_counter, series, start, floor)
                with self._lock:
                    self._last_durable[series] = max(value, self._last_durable.get(series, value))
                logger.info(f"Generated invoice number {series}-{value} using durable counter")
                return value, CounterSource.DURABLE
            except Exception as e:
                logger.error(f"Error incrementing durable counter for series {series}: {e!r}")
                if not self.config.allow_in_process_fallback:
                    raise NumberingError(
                        f"Could not allocate a number for series {series}: {e!r}",
                        step="numbering")
                logger.warning(f"Falling back to in-process counter for series {series}")

        return self._next_in_process(series), CounterSource.IN_PROCESS

    def _next_in_process(self, series: str) -> int:
        start = self.config.start_for(series)
        if start is None:
            raise UnknownSeriesError(f"Unknown invoice series {series}", step="numbering")

        with self._lock:
            current = max(self._counters.get(series, start), self._last_durable.get(series, start))
            current += 1
            self._counters[series] = current

        logger.warning(f"Generated invoice number {series}-{current} using in-process counter")
        return current

    def _degraded_number(self, series: str) -> str:
        timestamp = str(int(time.time() * 1000))[-8:]
        disambiguator = secrets.token_hex(3)
        number = f"{series}-{timestamp}-{disambiguator}"
        logger.warning(f"Degraded invoice number allocation for series {series}: {number}")
        return number

    async def allocate(self, series: str) -> AllocatedNumber:
        """
        Allocate and format the next invoice number of ``series``.

        Raises:
            NumberingError: the durable store failed and fallback is disabled
        """
        try:
            value, source = await self._next_with_source(series)
        except UnknownSeriesError:
            return AllocatedNumber(
                series=series,
                invoice_number=self._degraded_number(series),
                source=CounterSource.DEGRADED,
            )
        return AllocatedNumber(
            series=series,
            value=value,
            invoice_number=format_invoice_number(series, value),
            source=source,
        )

    def _in_process_counters(self) -> List[CounterRead]:
        with self._lock:
            return [
                CounterRead(
                    series=series,
                    current_value=max(self._counters.get(series, start), self._last_durable.get(series, start)),
                    start_value=start,
                    source=CounterSource.IN_PROCESS,
                )
                for series, start in self.config.configured_series.items()
            ]

    async def get_counters(self) -> List[CounterRead]:
        if self.store is not None:
            try:
                return await self._call_store(self.store.list_counters)
            except Exception as e:
                logger.error(f"Error getting counters from durable store, falling back to in-process: {e!r}")
        return self._in_process_counters()

    async def get_counter(self, series: str) -> Optional[CounterRead]:
        """Counter of one series, or None when the series is unknown"""
        if self.store is not None:
            try:
                return await self._call_store(self.store.get_counter, series)
            except Exception as e:
                logger.error(f"Error getting counter {series} from durable store: {e!r}")
        return next((counter for counter in self._in_process_counters() if counter.series == series), None)

    async def initialize_counters(self) -> List[str]:
        """Create missing counters of the configured series. Returns the created series."""
        if self.store is None:
            return []
        created = []
        for series, start in self.config.configured_series.items():
            if await self._call_store(self.store.ensure_counter, series, start):
                created.append(series)
        if created:
            logger.info(f"Initialized missing invoice counters: {created}")
        return created
