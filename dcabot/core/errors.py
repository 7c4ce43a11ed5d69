"""Exception hierarchy for the execution pipeline."""

from __future__ import annotations


class DCAError(Exception):
    """Base class for all service errors."""


class PreconditionFailed(DCAError):
    """Strategy or exchange missing/inactive, or the strategy is already executing.

    Raised before any Execution record is created.
    """


class ConditionsNotMet(DCAError):
    """A conditional firing was gated out by its market conditions.

    Not a failure: the engine turns this into a ``skipped`` outcome.
    """

    def __init__(self, failed: list[str]) -> None:
        self.failed = failed
        super().__init__("Conditions not met: " + ", ".join(failed))


class OrderRejected(DCAError):
    """The venue refused (or could not be reached to place) an order."""


class MarketDataUnavailable(DCAError):
    """Ticker or candle data could not be fetched."""


class DecryptionFailed(DCAError):
    """A stored credential blob is malformed or failed authentication."""


class UnsupportedExchange(DCAError, ValueError):
    """No client adapter exists for the exchange type."""


class NotFound(DCAError):
    """An owner-scoped record does not exist."""


class ExchangeRequestError(DCAError):
    """A venue HTTP call failed (transport error or non-2xx response).

    Adapters raise this from their request seam and translate it into
    ``MarketDataUnavailable`` or ``OrderRejected`` at the public boundary.
    """

    def __init__(self, message: str, status: int | None = None, code: object = None) -> None:
        self.status = status
        self.code = code
        super().__init__(message)
