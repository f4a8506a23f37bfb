"""Live exchange rates with redundant endpoints and a fallback table.

Fiat and crypto endpoint groups are fetched concurrently. Within a group the
endpoints are tried in priority order and the first well-formed response
wins. Every response is normalized to "currency units per 1 USD" before it
is merged over the previous table, so one failing group can never erase
rates that were already known.
"""
from __future__ import annotations

import asyncio
import http.client
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Iterable, Mapping
from urllib.request import Request, urlopen

from subtrack.currency_conversion import (
    FALLBACK_RATES,
    USD,
    RateProviderUnavailable,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_REFRESH_INTERVAL_SECONDS = 300.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0

FALLBACK_STATUS = "Using fallback exchange rates due to connection issues"

COINGECKO_IDS: dict[str, str] = {
    "bitcoin": "BTC",
    "ethereum": "ETH",
    "tether": "USDT",
    "binancecoin": "BNB",
    "ripple": "XRP",
    "usd-coin": "USDC",
    "solana": "SOL",
    "cardano": "ADA",
    "dogecoin": "DOGE",
    "tron": "TRX",
    "the-open-network": "TON",
    "polkadot": "DOT",
    "matic-network": "MATIC",
    "dai": "DAI",
    "wrapped-bitcoin": "WBTC",
    "avalanche-2": "AVAX",
    "shiba-inu": "SHIB",
    "litecoin": "LTC",
    "chainlink": "LINK",
    "bitcoin-cash": "BCH",
}


class RateFetchFailure(RateProviderUnavailable):
    """Raised when every endpoint of every group failed."""


class MalformedRatePayload(RateProviderUnavailable):
    """Raised when a 2xx response does not have the expected shape."""


@dataclass(frozen=True)
class RateEndpoint:
    url: str
    kind: str
    headers: Mapping[str, str] = field(default_factory=dict)


# Failures that abandon one endpoint attempt; the next endpoint is tried.
ENDPOINT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    ValueError,
    http.client.HTTPException,
    RateProviderUnavailable,
)

RateTable = dict[str, Decimal]
FetchJson = Callable[[RateEndpoint, float], Awaitable[object]]
Sleep = Callable[[float], Awaitable[None]]


def _normalize_fiat_rates(payload: object) -> RateTable:
    if not isinstance(payload, dict):
        raise MalformedRatePayload("Fiat payload must be a JSON object.")
    raw_rates = payload.get("rates", payload)
    if not isinstance(raw_rates, dict):
        raise MalformedRatePayload("Fiat payload missing rates.")
    rates: RateTable = {}
    for code, value in raw_rates.items():
        rate = _positive_decimal(value)
        if isinstance(code, str) and rate is not None:
            rates[code.strip().upper()] = rate
    return _require_rates(rates)


def _normalize_coincap(payload: object) -> RateTable:
    assets = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(assets, list):
        raise MalformedRatePayload("CoinCap payload missing data list.")
    rates: RateTable = {}
    for asset in assets:
        if not isinstance(asset, dict) or not isinstance(asset.get("symbol"), str):
            continue
        price = _positive_decimal(asset.get("priceUsd"))
        if price is not None:
            rates[asset["symbol"].upper()] = Decimal("1") / price
    return _require_rates(rates)


def _normalize_coingecko(payload: object) -> RateTable:
    if not isinstance(payload, dict):
        raise MalformedRatePayload("CoinGecko payload must be a JSON object.")
    rates: RateTable = {}
    for coin_id, quote in payload.items():
        if not isinstance(quote, dict):
            continue
        price = _positive_decimal(quote.get("usd"))
        if price is None:
            continue
        symbol = COINGECKO_IDS.get(coin_id, str(coin_id).upper())
        rates[symbol] = Decimal("1") / price
    return _require_rates(rates)


def _normalize_coinmarketcap(payload: object) -> RateTable:
    listings = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(listings, list):
        raise MalformedRatePayload("CoinMarketCap payload missing data list.")
    rates: RateTable = {}
    for listing in listings:
        if not isinstance(listing, dict) or not isinstance(listing.get("symbol"), str):
            continue
        quote = listing.get("quote") or {}
        usd_quote = quote.get(USD) if isinstance(quote, dict) else None
        price = _positive_decimal(usd_quote.get("price")) if isinstance(usd_quote, dict) else None
        if price is not None:
            rates[listing["symbol"].upper()] = Decimal("1") / price
    return _require_rates(rates)


NORMALIZERS: dict[str, Callable[[object], RateTable]] = {
    "exchangerate_api": _normalize_fiat_rates,
    "fixer": _normalize_fiat_rates,
    "open_er_api": _normalize_fiat_rates,
    "coincap": _normalize_coincap,
    "coingecko": _normalize_coingecko,
    "coinmarketcap": _normalize_coinmarketcap,
}


def normalize_payload(endpoint: RateEndpoint, payload: object) -> RateTable:
    try:
        normalizer = NORMALIZERS[endpoint.kind]
    except KeyError as exc:
        raise MalformedRatePayload(f"No normalizer for endpoint kind: {endpoint.kind}") from exc
    return normalizer(payload)


FIAT_ENDPOINTS: tuple[RateEndpoint, ...] = (
    RateEndpoint("https://api.exchangerate-api.com/v4/latest/USD", "exchangerate_api"),
    RateEndpoint("https://api.fixer.io/latest?base=USD", "fixer"),
    RateEndpoint("https://open.er-api.com/v6/latest/USD", "open_er_api"),
)


def default_crypto_endpoints(coinmarketcap_api_key: str | None = None) -> tuple[RateEndpoint, ...]:
    endpoints = [
        RateEndpoint("https://api.coincap.io/v2/assets", "coincap"),
        RateEndpoint(
            "https://api.coingecko.com/api/v3/simple/price?ids="
            + ",".join(COINGECKO_IDS)
            + "&vs_currencies=usd",
            "coingecko",
        ),
    ]
    if coinmarketcap_api_key:
        endpoints.append(
            RateEndpoint(
                "https://pro-api.coinmarketcap.com/v1/cryptocurrency/listings/latest",
                "coinmarketcap",
                headers={"X-CMC_PRO_API_KEY": coinmarketcap_api_key},
            )
        )
    return tuple(endpoints)


async def fetch_json(endpoint: RateEndpoint, timeout: float) -> object:
    """GET ``endpoint`` and decode its JSON body.

    ``urlopen`` raises for non-2xx statuses. The blocking call runs in a
    worker thread so the event loop is never held; ``wait_for`` abandons it
    once ``timeout`` elapses without touching other in-flight requests.
    Any transport or decode error is raised as ``RateProviderUnavailable``.
    """
    request = Request(endpoint.url, headers={"Accept": "application/json", **endpoint.headers})

    def _get() -> object:
        with urlopen(request, timeout=timeout) as response:
            return json.load(response)

    try:
        return await asyncio.wait_for(asyncio.to_thread(_get), timeout=timeout)
    except ENDPOINT_ERRORS as exc:
        raise RateProviderUnavailable(f"Rate endpoint unavailable: {endpoint.url}") from exc


class RateService:
    """Owns the shared rate table and keeps it fresh.

    Consumers read :attr:`rates` (a copy) or register a callback with
    :meth:`subscribe` to receive every newly published table.
    """

    def __init__(
        self,
        fiat_endpoints: Iterable[RateEndpoint] = FIAT_ENDPOINTS,
        crypto_endpoints: Iterable[RateEndpoint] | None = None,
        fetcher: FetchJson = fetch_json,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        sleep: Sleep = asyncio.sleep,
        initial_rates: Mapping[str, Decimal] | None = None,
    ) -> None:
        self.fiat_endpoints = tuple(fiat_endpoints)
        self.crypto_endpoints = tuple(
            default_crypto_endpoints() if crypto_endpoints is None else crypto_endpoints
        )
        self.timeout = timeout
        self.refresh_interval = refresh_interval
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._fetcher = fetcher
        self._sleep = sleep
        self._rates: RateTable = dict(initial_rates or FALLBACK_RATES)
        self._subscribers: list[Callable[[RateTable], None]] = []
        self._lock: asyncio.Lock | None = None
        self._task: asyncio.Task | None = None
        self.last_updated: datetime | None = None
        self.status: str | None = None
        self.loading = True

    @property
    def rates(self) -> RateTable:
        return dict(self._rates)

    def subscribe(self, callback: Callable[[RateTable], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def fetch_rates(self) -> RateTable:
        """Run one fetch attempt over both groups and merge what succeeded."""
        fiat_result, crypto_result = await asyncio.gather(
            self._fetch_group("fiat", self.fiat_endpoints),
            self._fetch_group("crypto", self.crypto_endpoints),
            return_exceptions=True,
        )
        fetched = [
            result
            for result in (fiat_result, crypto_result)
            if not isinstance(result, BaseException)
        ]
        if not fetched:
            raise RateFetchFailure("All fiat and crypto rate endpoints failed")

        merged = dict(self._rates)
        for rates in fetched:
            merged.update(rates)
        merged[USD] = Decimal("1")
        self._publish(merged)
        return self.rates

    async def refresh(self) -> RateTable:
        """Fetch with retries; degrade to the last known table on failure."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            try:
                for attempt in range(self.max_retries + 1):
                    if attempt:
                        self.status = (
                            f"Retrying to fetch rates... (Attempt {attempt}/{self.max_retries})"
                        )
                        await self._sleep(self.retry_delay * attempt)
                    try:
                        rates = await self.fetch_rates()
                    except RateFetchFailure as exc:
                        logger.warning("Rate fetch attempt %s failed: %s", attempt + 1, exc)
                        continue
                    self.status = None
                    return rates
                self.status = FALLBACK_STATUS
                logger.warning(FALLBACK_STATUS)
                return self.rates
            finally:
                self.loading = False

    async def run(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception:
                logger.exception("Rate refresh cycle failed")
            await self._sleep(self.refresh_interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _fetch_group(self, group: str, endpoints: tuple[RateEndpoint, ...]) -> RateTable:
        for endpoint in endpoints:
            try:
                payload = await self._fetcher(endpoint, self.timeout)
                return normalize_payload(endpoint, payload)
            except ENDPOINT_ERRORS as exc:
                logger.debug("Rate endpoint %s failed: %r", endpoint.url, exc)
        raise RateFetchFailure(f"All {group} rate endpoints failed")

    def _publish(self, rates: RateTable) -> None:
        self._rates = rates
        self.last_updated = datetime.now(timezone.utc)
        snapshot = self.rates
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Rate subscriber %r failed", callback)


def _positive_decimal(value: object) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        return None
    if not parsed.is_finite() or parsed <= 0:
        return None
    return parsed


def _require_rates(rates: RateTable) -> RateTable:
    if not rates:
        raise MalformedRatePayload("Payload contained no usable rates.")
    return rates
