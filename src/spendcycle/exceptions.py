"""Exception hierarchy for the expense generation engine."""

from __future__ import annotations


class SpendCycleError(Exception):
    """Base exception for all spendcycle errors."""

    retryable: bool = False


class ConfigurationError(SpendCycleError):
    """Raised when configuration is invalid or missing."""


class ValidationFailure(SpendCycleError):
    """An obligation cannot be generated as stored (missing references, bad amount/date)."""

    def __init__(self, message: str, *, missing_fields: list[str] | None = None):
        super().__init__(message)
        self.missing_fields = list(missing_fields or [])


class CardConfigurationError(ValidationFailure):
    """A credit card lacks a usable closing/due day configuration."""


class TransientStorageError(SpendCycleError):
    """Lock contention, timeouts and other storage hiccups worth retrying."""

    retryable = True


class CurrencyConversionError(SpendCycleError):
    """The exchange-rate collaborator could not convert an amount."""

    retryable = True


class StrategyLogicError(SpendCycleError):
    """Unexpected exception raised inside a generation strategy."""

    retryable = True


class DuplicateGenerationError(SpendCycleError):
    """A ledger entry for the same origin and period already exists."""


class WholePassFailure(SpendCycleError):
    """The generation pass itself failed (e.g. storage unavailable)."""

    retryable = True
