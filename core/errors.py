"""Error taxonomy for the decision engine.

Only InvalidShape is a programming error. The rest describe expected
runtime conditions that callers degrade around rather than crash on.
"""


class TradingEngineError(Exception):
    """Base class for engine errors."""


class DataInsufficient(TradingEngineError):
    """Too few samples for a computation; callers return neutral defaults."""


class InferenceUnavailable(TradingEngineError):
    """Upstream model call failed after all retries."""


class TradeRejected(TradingEngineError):
    """Risk engine vetoed a trade. Never retried."""

    def __init__(self, symbol: str, reason: str):
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason


class TrainingFailed(TradingEngineError):
    """A training job could not produce weights."""


class PersistenceFailure(TradingEngineError):
    """A write to the object store failed."""

    def __init__(self, path: str, cause: Exception | None = None):
        super().__init__(f"{path}: {cause}" if cause else path)
        self.path = path
        self.cause = cause


class InvalidShape(TradingEngineError, ValueError):
    """Matrix operands have incompatible shapes."""
