"""Currency normalization against a stubbed exchange-rate API."""
from __future__ import annotations

import logging
from decimal import Decimal

import pytest
import requests

from expenseflow.services import currency_service, expense_service


class _FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


@pytest.fixture()
def lookups_enabled(app):
    app.config["CURRENCY_LOOKUP_ENABLED"] = True
    return app


@pytest.fixture()
def stub_get(monkeypatch):
    calls = []

    def _install(response=None, error=None):
        def fake_get(url, timeout=None):
            calls.append(url)
            if error is not None:
                raise error
            return response

        monkeypatch.setattr(currency_service.requests, "get", fake_get)
        return calls

    return _install


def test_same_currency_needs_no_lookup(lookups_enabled, stub_get):
    calls = stub_get(error=AssertionError("should not be called"))
    assert currency_service.get_rate("usd", "USD") == Decimal("1")
    assert calls == []


def test_rate_is_read_from_provider(lookups_enabled, stub_get):
    calls = stub_get(_FakeResponse({"base": "EUR", "rates": {"USD": 1.1}}))
    assert currency_service.get_rate("eur", "usd") == Decimal("1.1")
    assert calls == ["https://api.exchangerate-api.com/v4/latest/EUR"]


def test_normalize_rounds_to_cents(lookups_enabled, stub_get):
    stub_get(_FakeResponse({"rates": {"USD": 1.08766}}))
    normalized = currency_service.normalize(Decimal("100"), "EUR", "USD")
    assert normalized.rate == Decimal("1.08766")
    assert normalized.converted_amount == Decimal("108.77")


@pytest.mark.parametrize(
    "install",
    [
        {"error": requests.ConnectionError("boom")},
        {"response": _FakeResponse({}, status_code=500)},
        {"response": _FakeResponse(ValueError("not json"))},
        {"response": _FakeResponse({"rates": {"GBP": 0.8}})},
        {"response": _FakeResponse({"rates": {"USD": 0}})},
        {"response": _FakeResponse({"rates": {"USD": -1.2}})},
        {"response": _FakeResponse({"rates": {"USD": float("nan")}})},
        {"response": _FakeResponse({"rates": {"USD": float("inf")}})},
        {"response": _FakeResponse({"rates": {"USD": "1,1"}})},
    ],
    ids=["network", "http-error", "bad-json", "missing-rate", "zero-rate", "negative-rate",
         "nan-rate", "infinite-rate", "garbled-rate"],
)
def test_failures_degrade_to_one(lookups_enabled, stub_get, caplog, install):
    stub_get(**install)
    with caplog.at_level(logging.WARNING, logger="expenseflow.services.currency_service"):
        normalized = currency_service.normalize(Decimal("42.50"), "EUR", "USD")
    assert normalized.rate == Decimal("1")
    assert normalized.converted_amount == Decimal("42.50")
    assert "degraded" in caplog.text


def test_fetch_exchange_rates_raises_when_degraded(lookups_enabled, stub_get):
    stub_get(error=requests.Timeout("slow"))
    with pytest.raises(currency_service.ExternalServiceDegraded):
        currency_service.fetch_exchange_rates("EUR")


def test_disabled_lookups_use_one(app, stub_get):
    calls = stub_get(error=AssertionError("should not be called"))
    assert currency_service.get_rate("EUR", "USD") == Decimal("1")
    assert calls == []


def test_country_currency_lookup(lookups_enabled, stub_get):
    stub_get(
        _FakeResponse(
            [
                {"name": {"common": "Germany"}, "currencies": {"EUR": {"name": "Euro"}}},
                {"name": {"common": "India"}, "currencies": {"INR": {"name": "Indian rupee"}}},
            ]
        )
    )
    assert currency_service.get_default_currency_for_country("india") == {
        "currency_code": "INR",
        "currency_name": "Indian rupee",
    }


def test_country_lookup_failure_returns_empty(lookups_enabled, stub_get):
    stub_get(error=requests.ConnectionError("down"))
    assert currency_service.get_default_currency_for_country("India") == {
        "currency_code": None,
        "currency_name": None,
    }


def test_expense_creation_survives_unusable_rate(lookups_enabled, stub_get, employee):
    stub_get(_FakeResponse({"rates": {"USD": float("nan")}}))
    expense = expense_service.create_expense(
        employee_id=employee.id,
        company_id=employee.company_id,
        title="Berlin taxi",
        amount="42.50",
        currency_code="EUR",
        category="Transportation",
        expense_date="2024-04-02",
    )
    assert expense.currency_rate == Decimal("1")
    assert expense.converted_amount == Decimal("42.50")


def test_currency_list_from_provider(lookups_enabled, stub_get):
    calls = stub_get(_FakeResponse({"base": "USD", "rates": {"USD": 1, "EUR": 0.9}}))
    listing = currency_service.list_currencies()
    assert listing == {
        "base_currency": "USD",
        "currencies": [{"code": "EUR", "rate": 0.9}, {"code": "USD", "rate": 1}],
        "fallback": False,
    }
    assert calls == ["https://api.exchangerate-api.com/v4/latest/USD"]


def test_currency_list_falls_back(lookups_enabled, stub_get):
    stub_get(error=requests.ConnectionError("down"))
    listing = currency_service.list_currencies("EUR")
    assert listing["fallback"] is True
    assert listing["base_currency"] == "USD"
    assert {"code": "INR", "rate": 75} in listing["currencies"]


def test_countries_are_sorted_by_name(lookups_enabled, stub_get):
    stub_get(
        _FakeResponse(
            [
                {"name": {"common": "India"}, "currencies": {"INR": {"name": "Indian rupee"}}},
                {"name": {"common": "Antarctica"}},
                {"name": {"common": "Germany"}, "currencies": {"EUR": {"name": "Euro"}}},
            ]
        )
    )
    assert currency_service.list_countries() == [
        {"name": "Antarctica", "currencies": {}},
        {"name": "Germany", "currencies": {"EUR": {"name": "Euro"}}},
        {"name": "India", "currencies": {"INR": {"name": "Indian rupee"}}},
    ]


def test_country_list_failure_raises(lookups_enabled, stub_get):
    stub_get(_FakeResponse({"message": "unexpected"}))
    with pytest.raises(currency_service.ExternalServiceDegraded):
        currency_service.list_countries()
