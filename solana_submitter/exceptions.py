"""
Exception hierarchy for the transaction submission engine.

Each error has a stable code (``TX_004``, ``RPC_003``, ...), a message, an
optional context mapping and an ``is_recoverable`` flag that the retry
coordinator reads to decide whether another attempt may succeed.

Recoverable errors are retried inside the engine and only ever reach a
caller as the ``last_cause`` of an :class:`ExhaustedError`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Optional, Type


# =============================================================================
# BASE EXCEPTIONS
# =============================================================================

@dataclass(eq=False)
class SubmitterError(Exception):
    """
    Base exception for all submitter errors.

    Subclasses add their own fields (signature, attempt, logs, ...); they
    show up in :meth:`to_dict` without further work. ``retry_after`` is the
    server's wait hint in seconds, when it sent one.
    """
    message: str
    error_code: str = "GENERAL_001"
    context: dict[str, Any] = field(default_factory=dict)
    is_recoverable: bool = False
    retry_after: Optional[float] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        super().__init__(self.format_message())

    def format_message(self) -> str:
        text = f"[{self.error_code}] {self.message}"
        if not self.context:
            return text
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{text} | Context: {details}"

    def to_dict(self) -> dict[str, Any]:
        """Every populated field, with nested errors and timestamps made JSON-safe."""
        data: dict[str, Any] = {"exception_type": type(self).__name__}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, SubmitterError):
                value = value.to_dict()
            elif isinstance(value, datetime):
                value = value.isoformat()
            data[f.name] = value
        return data

    def __str__(self) -> str:
        return self.format_message()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.error_code}: {self.message!r}>"


@dataclass(eq=False)
class ConfigurationError(SubmitterError):
    """Error in engine configuration or settings."""
    error_code: str = "CONFIG_001"
    is_recoverable: bool = False


@dataclass(eq=False)
class InvalidRequestError(SubmitterError):
    """The caller asked for something that can never succeed."""
    error_code: str = "REQ_001"
    is_recoverable: bool = False


@dataclass(eq=False)
class SubscriptionError(SubmitterError):
    """Signature subscription over the websocket failed."""
    error_code: str = "RPC_007"
    is_recoverable: bool = True


# =============================================================================
# TRANSACTION EXCEPTIONS
# =============================================================================

@dataclass(eq=False)
class SubmissionEngineError(SubmitterError):
    """Base exception for errors raised while landing a transaction."""
    error_code: str = "TX_000"
    signature: Optional[str] = None
    attempt: Optional[int] = None


@dataclass(eq=False)
class BuildError(SubmissionEngineError):
    """Failed to build, sign or pre-flight the transaction."""
    error_code: str = "TX_001"
    is_recoverable: bool = True


@dataclass(eq=False)
class BlockhashFetchError(BuildError):
    """Recent blockhash not available."""
    error_code: str = "TX_002"


@dataclass(eq=False)
class SimulationRejectedError(BuildError):
    """Dry-run simulation reported an on-chain error."""
    error_code: str = "TX_003"
    logs: list[str] = field(default_factory=list)
    units_consumed: Optional[int] = None


@dataclass(eq=False)
class SubmissionError(SubmissionEngineError):
    """The send call failed at the transport or RPC layer."""
    error_code: str = "TX_004"
    is_recoverable: bool = True
    duplicate: bool = False


@dataclass(eq=False)
class OnChainFailureError(SubmissionEngineError):
    """The network processed the transaction but execution failed."""
    error_code: str = "TX_005"
    is_recoverable: bool = True
    reason: Optional[str] = None


@dataclass(eq=False)
class ConfirmationTimeoutError(SubmissionEngineError):
    """No confirmation observed before the deadline."""
    error_code: str = "TX_006"
    is_recoverable: bool = True
    timeout: Optional[float] = None


@dataclass(eq=False)
class RateLimitedError(SubmissionEngineError):
    """RPC endpoint answered with a too-many-requests signal."""
    error_code: str = "RPC_003"
    is_recoverable: bool = True
    status_code: Optional[int] = None


@dataclass(eq=False)
class ExhaustedError(SubmissionEngineError):
    """All attempts consumed without a confirmed outcome."""
    error_code: str = "TX_099"
    is_recoverable: bool = False
    last_cause: Optional[SubmitterError] = None
    attempts: int = 0


# =============================================================================
# TRANSPORT ERROR CLASSIFICATION
# =============================================================================

RATE_LIMIT_PATTERN = re.compile(r"\b429\b|too many requests|rate[ -]?limit")
DUPLICATE_MARKERS = ("already been processed", "alreadyprocessed", "already processed")


def _iter_causes(exc: BaseException):
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _retry_after_from(exc: BaseException) -> tuple[Optional[int], Optional[float]]:
    for item in _iter_causes(exc):
        response = getattr(item, "response", None)
        status = getattr(response, "status_code", None) or getattr(response, "status", None)
        if status is None:
            continue
        header = None
        headers = getattr(response, "headers", None)
        if headers is not None:
            header = headers.get("Retry-After")
        try:
            retry_after = float(header) if header is not None else None
        except ValueError:
            retry_after = None
        return int(status), retry_after
    return None, None


def classify_transport_error(
    exc: BaseException,
    default: Type[SubmissionEngineError] = SubmissionError,
    **fields: Any,
) -> SubmissionEngineError:
    """
    Map an exception raised by the RPC transport to the engine taxonomy.

    HTTP 429 responses anywhere in the cause chain, or error text that
    mentions rate limiting, become :class:`RateLimitedError`. Errors that
    report the transaction as already processed become a duplicate
    :class:`SubmissionError`. Everything else is wrapped in ``default``.
    """
    if isinstance(exc, SubmissionEngineError):
        return exc

    status_code, retry_after = _retry_after_from(exc)
    text = " ".join(str(item) for item in _iter_causes(exc)).lower()
    error_msg = getattr(exc, "error_msg", None)
    if error_msg:
        text += " " + str(error_msg).lower()
    message = str(error_msg or exc) or type(exc).__name__

    if status_code == 429 or RATE_LIMIT_PATTERN.search(text):
        return RateLimitedError(
            message=f"Rate limited by RPC endpoint: {message}",
            status_code=status_code or 429,
            retry_after=retry_after,
            **fields,
        )

    if any(marker in text for marker in DUPLICATE_MARKERS):
        return SubmissionError(
            message=f"Transaction already processed: {message}",
            duplicate=True,
            **fields,
        )

    return default(message=message, **fields)


__all__ = [
    "SubmitterError",
    "ConfigurationError",
    "InvalidRequestError",
    "SubscriptionError",
    "SubmissionEngineError",
    "BuildError",
    "BlockhashFetchError",
    "SimulationRejectedError",
    "SubmissionError",
    "OnChainFailureError",
    "ConfirmationTimeoutError",
    "RateLimitedError",
    "ExhaustedError",
    "classify_transport_error",
]
