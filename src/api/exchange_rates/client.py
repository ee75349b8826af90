import logging
import xml.etree.ElementTree as ElementTree
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional
import httpx
from src.api.exchange_rates.config import ExchangeRateConfig
from src.api.exchange_rates.schemas.exchange_rate import CurrencyPair, FeedRate

logger = logging.getLogger(__name__)


class RateFeedError(Exception):
    """The feed could not be reached or its document could not be parsed"""


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_rate_document(xml: str, currency: str) -> FeedRate:
    """
    Extract one currency's rate from a BNR ``nbrfxrates.xml`` document.

    Rates published with a ``multiplier`` attribute are quoted per that many
    units and are divided back to a single unit.
    """
    try:
        root = ElementTree.fromstring(xml)
    except ElementTree.ParseError as e:
        raise RateFeedError(f"Invalid rate document: {e}")

    for cube in root.iter():
        if _local_name(cube.tag) != "Cube":
            continue
        as_of: Optional[date] = None
        if cube.get("date"):
            as_of = date.fromisoformat(cube.get("date"))
        for rate in cube:
            if _local_name(rate.tag) != "Rate" or rate.get("currency") != currency:
                continue
            try:
                value = Decimal((rate.text or "").strip())
                multiplier = Decimal(rate.get("multiplier", "1"))
            except InvalidOperation:
                raise RateFeedError(f"Invalid {currency} rate: {rate.text!r}")
            if value <= 0:
                raise RateFeedError(f"Invalid {currency} rate: {value}")
            return FeedRate(rate=value / multiplier, as_of=as_of)

    raise RateFeedError(f"{currency} rate not found in rate document")


class RateFeedClient:
    """Client for the remote daily exchange-rate feed"""

    def __init__(self, config: ExchangeRateConfig):
        self.config = config

    async def fetch_rate(self, pair: CurrencyPair) -> FeedRate:
        """
        Fetch the rate of ``pair.from_currency`` expressed in the local currency.

        Args:
            pair: A foreign-to-local currency pair

        Returns:
            FeedRate with the rate and the publication date
        """
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.get(self.config.feed_url)
                response.raise_for_status()
                xml = response.text
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error occurred in RateFeedClient fetch_rate: {e}")
            raise RateFeedError(f"HTTP error occurred fetching {pair.key}: {e}")
        except httpx.HTTPError as e:
            logger.error(f"Error occurred in RateFeedClient fetch_rate: {e}")
            raise RateFeedError(f"Error occurred fetching {pair.key}: {e}")

        return parse_rate_document(xml, pair.from_currency)
