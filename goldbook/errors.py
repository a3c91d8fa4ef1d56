from __future__ import annotations


class PriceError(Exception):
    """Base class for everything the price pipeline can raise."""


class StructuralParseError(PriceError):
    pass


class NoValidPriceError(PriceError):
    pass


class FetchTimeoutError(PriceError, TimeoutError):
    pass


class FetchCancelledError(PriceError):
    """Cooperative cancellation was observed.

    Never shown to the user and never logged as a failure: whoever cancelled the
    token already knows, and the result is discarded.
    """


class FetchInProgressError(PriceError):
    pass


class StaleBackupError(PriceError):
    def __init__(self, age_ms: int, max_age_ms: int) -> None:
        super().__init__(f"backup is {age_ms} ms old (limit {max_age_ms} ms)")
        self.age_ms = age_ms
        self.max_age_ms = max_age_ms


class AllProvidersFailedError(PriceError):
    def __init__(self, reasons: dict[str, str], message: str | None = None) -> None:
        self.reasons = dict(reasons)
        detail = "; ".join(f"{name}: {reason}" for name, reason in self.reasons.items()) or "no providers configured"
        super().__init__(f"{message or 'all price providers failed'} ({detail})")


class BackupUnavailableError(AllProvidersFailedError):
    def __init__(self, reasons: dict[str, str]) -> None:
        super().__init__(reasons, message="all price providers failed and no usable backup exists")


class InvalidAmountError(ValueError):
    pass
