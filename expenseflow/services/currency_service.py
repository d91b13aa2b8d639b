"""Currency conversion and metadata helpers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import requests
from flask import current_app, has_app_context

from expenseflow.errors import ExternalServiceDegraded

logger = logging.getLogger(__name__)

EXCHANGE_API_URL = "https://api.exchangerate-api.com/v4/latest/{base}"
REST_COUNTRIES_URL = "https://restcountries.com/v3.1/all?fields=name,currencies"
DEFAULT_TIMEOUT = 10.0
CENT = Decimal("0.01")

# Served by list_currencies when the provider is unreachable.
FALLBACK_RATES = (
    ("USD", 1),
    ("EUR", 0.85),
    ("GBP", 0.73),
    ("JPY", 110),
    ("CAD", 1.25),
    ("AUD", 1.35),
    ("INR", 75),
)


@dataclass(frozen=True)
class NormalizedAmount:
    rate: Decimal
    converted_amount: Decimal


def _setting(name: str, default: Any) -> Any:
    if has_app_context():
        return current_app.config.get(name, default)
    return default


def fetch_countries() -> List[Dict[str, Any]]:
    """Country list with currencies from the REST Countries API.

    Raises :class:`ExternalServiceDegraded` when the lookup is disabled or fails.
    """
    if not _setting("CURRENCY_LOOKUP_ENABLED", True):
        raise ExternalServiceDegraded("Country lookups are disabled.")
    try:
        response = requests.get(
            _setting("REST_COUNTRIES_URL", REST_COUNTRIES_URL),
            timeout=_setting("EXCHANGE_API_TIMEOUT", DEFAULT_TIMEOUT),
        )
        response.raise_for_status()
        countries = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise ExternalServiceDegraded(f"Country lookup failed: {exc}") from exc
    if not isinstance(countries, list):
        raise ExternalServiceDegraded("Country payload is not a list.")
    return [entry for entry in countries if isinstance(entry, dict)]


def list_countries() -> List[Dict[str, Any]]:
    """Countries sorted by common name, each with its currency map."""
    countries = [
        {
            "name": entry.get("name", {}).get("common", ""),
            "currencies": entry.get("currencies") or {},
        }
        for entry in fetch_countries()
    ]
    return sorted((c for c in countries if c["name"]), key=lambda c: c["name"].lower())


def get_default_currency_for_country(country_name: str) -> Dict[str, Optional[str]]:
    """Return the default currency information for a given country."""
    empty = {"currency_code": None, "currency_name": None}
    if not _setting("CURRENCY_LOOKUP_ENABLED", True):
        return empty

    try:
        countries = fetch_countries()
    except ExternalServiceDegraded as exc:
        logger.warning("Country lookup failed for %s: %s", country_name, exc.message)
        return empty

    target = next(
        (
            entry
            for entry in countries
            if entry.get("name", {}).get("common", "").lower() == country_name.lower()
        ),
        None,
    )
    if not target:
        return empty

    currencies = target.get("currencies") or {}
    if not currencies:
        return empty

    code, details = next(iter(currencies.items()))
    return {"currency_code": code, "currency_name": details.get("name")}


def fetch_exchange_rates(base_currency: str) -> Dict[str, float]:
    """Fetch exchange rates for the given base currency.

    Raises :class:`ExternalServiceDegraded` on any transport or payload problem.
    """
    url = _setting("EXCHANGE_API_URL", EXCHANGE_API_URL).format(base=base_currency.upper())
    try:
        response = requests.get(url, timeout=_setting("EXCHANGE_API_TIMEOUT", DEFAULT_TIMEOUT))
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise ExternalServiceDegraded(f"Exchange rate lookup for {base_currency} failed: {exc}") from exc

    rates = payload.get("rates") if isinstance(payload, dict) else None
    if not isinstance(rates, dict):
        raise ExternalServiceDegraded(f"Exchange rate payload for {base_currency} has no rates.")
    return rates


def get_rate(source_currency: str, target_currency: str) -> Decimal:
    """Multiplier from ``source_currency`` to ``target_currency``.

    Falls back to 1 on any failure. The failure is logged and never raised.
    """
    source = source_currency.upper()
    target = target_currency.upper()
    if source == target:
        return Decimal("1")
    if not _setting("CURRENCY_LOOKUP_ENABLED", True):
        logger.debug("Currency lookups disabled; using 1:1 for %s->%s", source, target)
        return Decimal("1")

    try:
        rates = fetch_exchange_rates(source)
        raw_rate = rates.get(target)
        if not raw_rate:
            raise ExternalServiceDegraded(f"No {target} rate published for {source}.")
        try:
            rate = Decimal(str(raw_rate))
        except InvalidOperation as exc:
            raise ExternalServiceDegraded(f"Unparseable {target} rate {raw_rate!r}.") from exc
        if not rate.is_finite() or rate <= 0:
            raise ExternalServiceDegraded(f"Unusable {target} rate {raw_rate!r}.")
        return rate
    except ExternalServiceDegraded as exc:
        logger.warning("Currency conversion %s->%s degraded to 1:1: %s", source, target, exc.message)
        return Decimal("1")


def normalize(amount: Decimal | float | str, source_currency: str, target_currency: str) -> NormalizedAmount:
    """Convert a submitted amount into the company's base currency."""
    rate = get_rate(source_currency, target_currency)
    converted = (Decimal(str(amount)) * rate).quantize(CENT)
    return NormalizedAmount(rate=rate, converted_amount=converted)


def list_currencies(base_currency: str = "USD") -> Dict[str, Any]:
    """Published rates against ``base_currency``, or a short static list."""
    base = base_currency.upper()
    if _setting("CURRENCY_LOOKUP_ENABLED", True):
        try:
            rates = fetch_exchange_rates(base)
        except ExternalServiceDegraded as exc:
            logger.warning("Currency list degraded to fallback data: %s", exc.message)
        else:
            return {
                "base_currency": base,
                "currencies": [{"code": code, "rate": rate} for code, rate in sorted(rates.items())],
                "fallback": False,
            }

    return {
        "base_currency": "USD",
        "currencies": [{"code": code, "rate": rate} for code, rate in FALLBACK_RATES],
        "fallback": True,
    }
