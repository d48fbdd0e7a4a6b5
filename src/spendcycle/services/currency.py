"""Currency conversion contract consumed by the generation strategies."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Protocol

from ..exceptions import CurrencyConversionError
from ..logging_config import get_logger

logger = get_logger("services.currency")

SUPPORTED_CURRENCIES = ("ARS", "USD")
CENTS = Decimal("0.01")


def round2(value: Decimal | float | int | str) -> float:
    """Round half-up to two decimals and return a float for storage."""

    return float(Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP))


@dataclass(frozen=True, slots=True)
class ConvertedAmount:
    ars: float
    usd: float
    rate_used: float


class CurrencyConverter(Protocol):
    """Converts an amount expressed in ``origin_currency`` into ARS and USD."""

    async def convert_amount(
        self, amount: float, origin_currency: str
    ) -> ConvertedAmount:  # pragma: no cover - interface
        ...


class StaticRateConverter:
    """Converter backed by a single configured USD/ARS selling rate.

    Used when no live exchange-rate service is wired in (CLI, tests).
    """

    def __init__(self, usd_rate: Decimal | float | str):
        try:
            self.usd_rate = Decimal(str(usd_rate))
        except InvalidOperation as exc:
            raise CurrencyConversionError(f"Invalid USD rate: {usd_rate!r}") from exc
        if self.usd_rate <= 0:
            raise CurrencyConversionError("USD rate must be positive")

    async def convert_amount(self, amount: float, origin_currency: str) -> ConvertedAmount:
        currency = (origin_currency or "ARS").upper()
        value = Decimal(str(amount))
        if currency == "ARS":
            ars, usd = value, value / self.usd_rate
        elif currency == "USD":
            ars, usd = value * self.usd_rate, value
        else:
            raise CurrencyConversionError(f"Unsupported origin currency: {origin_currency}")

        converted = ConvertedAmount(ars=round2(ars), usd=round2(usd), rate_used=float(self.usd_rate))
        logger.debug(
            "Converted amount",
            extra={"amount": amount, "origin_currency": currency, "ars": converted.ars, "usd": converted.usd},
        )
        return converted
