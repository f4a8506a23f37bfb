from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping

USD = "USD"

FIAT_CURRENCIES: tuple[str, ...] = (
    "USD", "EUR", "GBP", "JPY", "AUD",
    "CAD", "CHF", "CNY", "HKD", "NZD",
    "SEK", "KRW", "SGD", "NOK", "MXN",
    "INR", "RUB", "ZAR", "TRY", "BRL",
    "HUF",
)
CRYPTO_CURRENCIES: tuple[str, ...] = (
    "BTC", "ETH", "USDT", "BNB", "XRP",
    "USDC", "SOL", "ADA", "DOGE", "TRX",
    "TON", "DOT", "MATIC", "DAI", "WBTC",
    "AVAX", "SHIB", "LTC", "LINK", "BCH",
)
SUPPORTED_CURRENCIES = frozenset(FIAT_CURRENCIES + CRYPTO_CURRENCIES)

# Units of each currency per 1 USD.
FALLBACK_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("148.50"),
    "AUD": Decimal("1.52"),
    "CAD": Decimal("1.35"),
    "CHF": Decimal("0.87"),
    "CNY": Decimal("7.19"),
    "HKD": Decimal("7.82"),
    "NZD": Decimal("1.64"),
    "SEK": Decimal("10.42"),
    "KRW": Decimal("1325.76"),
    "SGD": Decimal("1.34"),
    "NOK": Decimal("10.51"),
    "MXN": Decimal("17.05"),
    "INR": Decimal("83.12"),
    "RUB": Decimal("92.50"),
    "ZAR": Decimal("18.87"),
    "TRY": Decimal("30.75"),
    "BRL": Decimal("4.95"),
    "HUF": Decimal("360"),
    "BTC": Decimal("0.000024"),
    "ETH": Decimal("0.00037"),
    "USDT": Decimal("1"),
    "BNB": Decimal("0.0033"),
    "XRP": Decimal("1.85"),
    "USDC": Decimal("1"),
    "SOL": Decimal("0.014"),
    "ADA": Decimal("2.1"),
    "DOGE": Decimal("13.5"),
    "TRX": Decimal("11.2"),
    "TON": Decimal("0.45"),
    "DOT": Decimal("0.16"),
    "MATIC": Decimal("1.2"),
    "DAI": Decimal("1"),
    "WBTC": Decimal("0.000024"),
    "AVAX": Decimal("0.037"),
    "SHIB": Decimal("38000"),
    "LTC": Decimal("0.012"),
    "LINK": Decimal("0.075"),
    "BCH": Decimal("0.004"),
}

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$", "EUR": "€", "GBP": "£", "JPY": "¥", "AUD": "A$",
    "CAD": "C$", "CHF": "Fr", "CNY": "¥", "HKD": "HK$", "NZD": "NZ$",
    "SEK": "kr", "KRW": "₩", "SGD": "S$", "NOK": "kr", "MXN": "Mex$",
    "INR": "₹", "RUB": "₽", "ZAR": "R", "TRY": "₺", "BRL": "R$",
    "HUF": "Ft",
}

FIAT_DECIMALS = 2
MIN_DISPLAY_DECIMALS = 2
CRYPTO_DECIMALS: dict[str, int] = {
    "BTC": 8,
    "ETH": 6,
    "USDT": 2,
    "BNB": 6,
    "XRP": 4,
    "USDC": 2,
    "SOL": 4,
    "ADA": 4,
    "DOGE": 4,
    "TRX": 4,
    "TON": 4,
    "DOT": 4,
    "MATIC": 4,
    "DAI": 2,
    "WBTC": 8,
    "AVAX": 4,
    "SHIB": 8,
    "LTC": 6,
    "LINK": 4,
    "BCH": 6,
}


class UnknownCurrency(ValueError):
    """Raised when a currency has neither a live nor a fallback rate."""

    def __init__(self, currency: str) -> None:
        super().__init__(f"Unsupported currency: {currency}")
        self.currency = currency


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot supply live rates."""


def get_rate(currency: str, rates: Mapping[str, Decimal] | None = None) -> Decimal:
    """Return units of ``currency`` per 1 USD.

    A code missing from ``rates`` falls back to the embedded table; a code
    missing from both raises :class:`UnknownCurrency`.
    """
    normalized = normalize_currency(currency)
    if normalized == USD:
        return Decimal("1")
    for table in (rates or {}, FALLBACK_RATES):
        value = table.get(normalized)
        if value is None:
            continue
        rate = _coerce_amount(value)
        if rate > 0:
            return rate
    raise UnknownCurrency(normalized)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rates: Mapping[str, Decimal] | None = None,
) -> Decimal:
    """Convert a monetary amount by pivoting through USD."""
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = _coerce_amount(amount)

    if normalized_source == normalized_target:
        return coerced_amount

    if normalized_source == USD:
        amount_in_usd = coerced_amount
    else:
        amount_in_usd = coerced_amount / get_rate(normalized_source, rates)
    return amount_in_usd * get_rate(normalized_target, rates)


def currency_decimals(currency: str) -> int:
    normalized = normalize_currency(currency)
    return CRYPTO_DECIMALS.get(normalized, FIAT_DECIMALS)


def format_amount(
    amount: Decimal | int | float | str,
    currency: str,
    rates: Mapping[str, Decimal] | None = None,
) -> str:
    """Render ``amount`` for display, e.g. ``$1,234.50`` or ``0.00012 BTC``.

    Between two and the currency's maximum number of fraction digits are
    shown. Currencies with a known symbol get it as a prefix; all others
    get their code as a suffix.
    """
    normalized = normalize_currency(currency)
    if normalized not in SUPPORTED_CURRENCIES and normalized not in (rates or {}):
        raise UnknownCurrency(normalized)

    max_decimals = currency_decimals(normalized)
    quantum = Decimal(1).scaleb(-max_decimals)
    value = _coerce_amount(amount).quantize(quantum, rounding=ROUND_HALF_UP)
    decimals = max_decimals
    while decimals > MIN_DISPLAY_DECIMALS:
        trimmed = value.quantize(Decimal(1).scaleb(-(decimals - 1)))
        if trimmed != value:
            break
        value = trimmed
        decimals -= 1
    rendered = f"{value:,.{decimals}f}"

    symbol = CURRENCY_SYMBOLS.get(normalized)
    if symbol:
        return f"{symbol}{rendered}"
    return f"{rendered} {normalized}"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if not 2 <= len(normalized) <= 10 or not normalized.isalnum():
        raise ValueError("Currency must be a 2-10 character alphanumeric code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
