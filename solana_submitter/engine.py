"""
Retry coordinator: lands one logical transaction or reports why it could not.

Each attempt bids a priority fee, builds and signs a fresh transaction
against a new blockhash, sends it once and races the confirmation channels
for a verdict. Recoverable failures escalate the fee (except rate limits,
which only wait) and loop until ``max_attempts`` is reached.

Resubmission is not idempotent. Every attempt carries a different
signature, and an earlier one may still land after the engine has moved on.
The engine checks all signatures it has sent before each retry and again
before giving up, and returns an earlier signature as the success when it
turns out to have confirmed. A failed result therefore means "not confirmed
within the engine's window", never "will not land".
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.signature import Signature

from .confirmation import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    ConfirmationOutcome,
    ConfirmationTracker,
    OutcomeKind,
)
from .events import EventKind, EventSink, SubmissionEvent, log_event
from .exceptions import (
    ConfirmationTimeoutError,
    ExhaustedError,
    InvalidRequestError,
    OnChainFailureError,
    RateLimitedError,
    SubmissionEngineError,
)
from .fees import DEFAULT_INITIAL_PRIORITY_FEE, DEFAULT_PRIORITY_FEE_CEILING, FeePolicy
from .retry import ConstantBackoff, ExponentialBackoff, RetryConfig, calculate_delay
from .submission import SubmissionChannel
from .transaction import TransactionAttempt, TransactionBuilder

logger = logging.getLogger(__name__)

VALID_COMMITMENTS = ("processed", "confirmed", "finalized")


@dataclass
class SubmitOptions:
    """Per-submission knobs. Defaults match ``SubmissionSettings``."""
    max_attempts: int = 5
    initial_priority_fee: int = DEFAULT_INITIAL_PRIORITY_FEE
    priority_fee_ceiling: Optional[int] = DEFAULT_PRIORITY_FEE_CEILING
    commitment: str = "confirmed"
    confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    base_backoff: float = 1.0
    max_backoff: float = 20.0
    rate_limit_backoff: float = 10.0
    max_rate_limit_backoff: float = 60.0
    simulate: bool = True
    use_subscription: bool = True
    compute_unit_limit: Optional[int] = None

    @classmethod
    def from_settings(cls, settings, commitment: str = "confirmed") -> "SubmitOptions":
        """Build options from ``SubmissionSettings`` and the RPC commitment."""
        return cls(
            max_attempts=settings.max_attempts,
            initial_priority_fee=settings.initial_priority_fee,
            priority_fee_ceiling=settings.priority_fee_ceiling,
            commitment=commitment,
            confirmation_timeout=settings.confirmation_timeout,
            poll_interval=settings.poll_interval,
            base_backoff=settings.base_backoff,
            max_backoff=settings.max_backoff,
            rate_limit_backoff=settings.rate_limit_backoff,
            max_rate_limit_backoff=settings.max_rate_limit_backoff,
            simulate=settings.simulate,
            use_subscription=settings.use_subscription,
            compute_unit_limit=settings.compute_unit_limit,
        )

    def validate(self) -> None:
        problems = []
        if self.max_attempts < 1:
            problems.append("max_attempts must be >= 1")
        if self.initial_priority_fee < 0:
            problems.append("initial_priority_fee must be >= 0")
        if self.priority_fee_ceiling is not None and self.priority_fee_ceiling < self.initial_priority_fee:
            problems.append("priority_fee_ceiling must be >= initial_priority_fee")
        if self.commitment not in VALID_COMMITMENTS:
            problems.append(f"commitment must be one of {', '.join(VALID_COMMITMENTS)}")
        if self.confirmation_timeout <= 0:
            problems.append("confirmation_timeout must be > 0")
        if self.poll_interval <= 0:
            problems.append("poll_interval must be > 0")
        if self.base_backoff < 0 or self.max_backoff < self.base_backoff:
            problems.append("backoff must satisfy 0 <= base_backoff <= max_backoff")
        if self.rate_limit_backoff < 0 or self.max_rate_limit_backoff < self.rate_limit_backoff:
            problems.append("rate limit wait must satisfy 0 <= rate_limit_backoff <= max_rate_limit_backoff")
        if self.compute_unit_limit is not None and self.compute_unit_limit <= 0:
            problems.append("compute_unit_limit must be > 0")
        if problems:
            raise InvalidRequestError(
                message="Invalid submit options: " + "; ".join(problems),
            )

    def fee_policy(self) -> FeePolicy:
        return FeePolicy(
            initial_bid=self.initial_priority_fee,
            ceiling=self.priority_fee_ceiling,
        )

    def backoff_config(self) -> RetryConfig:
        return RetryConfig(base_delay=self.base_backoff, max_delay=self.max_backoff)

    def rate_limit_config(self) -> RetryConfig:
        return RetryConfig(base_delay=self.rate_limit_backoff, max_delay=self.max_rate_limit_backoff)


@dataclass(frozen=True)
class AttemptRecord:
    """What happened to one attempt."""
    attempt_number: int
    priority_fee: int
    blockhash: Optional[str] = None
    signature: Optional[str] = None
    outcome: Optional[str] = None
    error_code: Optional[str] = None
    delay: Optional[float] = None
    reconciled: bool = False


@dataclass(frozen=True)
class SubmissionResult:
    signature: Optional[Signature] = None
    error: Optional[SubmissionEngineError] = None
    attempts: Tuple[AttemptRecord, ...] = field(default_factory=tuple)
    elapsed: float = 0.0

    @property
    def success(self) -> bool:
        return self.signature is not None and self.error is None

    @property
    def reconciled(self) -> bool:
        return any(record.reconciled for record in self.attempts)

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class SubmissionEngine:
    """
    Submit instruction sets until they confirm or attempts run out.

    Usage:
        async with LedgerClient(url) as ledger:
            engine = SubmissionEngine(ledger, SubmitOptions(max_attempts=3))
            result = await engine.submit([ix], payer)
            if result.success:
                print(result.signature)
    """

    def __init__(
        self,
        ledger,
        options: Optional[SubmitOptions] = None,
        event_sink: Optional[EventSink] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.options = options or SubmitOptions()
        self.event_sink = event_sink or log_event
        self._sleep = sleep
        self.channel = SubmissionChannel(ledger)
        self.tracker = ConfirmationTracker(
            ledger,
            poll_interval=self.options.poll_interval,
            use_subscription=self.options.use_subscription,
        )

    async def submit(
        self,
        instructions: Sequence[Instruction],
        signer: Keypair,
        options: Optional[SubmitOptions] = None,
    ) -> SubmissionResult:
        opts = options or self.options
        opts.validate()
        if not instructions:
            raise InvalidRequestError(message="No instructions added to transaction.")

        policy = opts.fee_policy()
        builder = TransactionBuilder(
            self.ledger,
            simulate=opts.simulate,
            compute_unit_limit=opts.compute_unit_limit,
            commitment=opts.commitment,
            sleep=self._sleep,
        )

        started = time.monotonic()
        records: List[AttemptRecord] = []
        sent: List[Signature] = []
        bid = policy.initial()
        previous: Optional[TransactionAttempt] = None
        last_error: Optional[SubmissionEngineError] = None

        logger.info(
            f"Submitting transaction for {signer.pubkey()} "
            f"(max {opts.max_attempts} attempts, initial fee {bid})"
        )

        for attempt_number in range(1, opts.max_attempts + 1):
            self._emit(EventKind.ATTEMPT_STARTED, attempt_number, priority_fee=bid)
            attempt: Optional[TransactionAttempt] = None
            outcome: Optional[ConfirmationOutcome] = None

            try:
                attempt = await builder.build(instructions, signer, bid, attempt_number, previous)
                previous = attempt
                sent.append(attempt.signature)
                await self.channel.send(attempt)
                self._emit(
                    EventKind.SENT,
                    attempt_number,
                    priority_fee=bid,
                    signature=str(attempt.signature),
                )
                outcome = await self.tracker.track(
                    attempt.signature,
                    commitment=opts.commitment,
                    timeout=opts.confirmation_timeout,
                    last_valid_block_height=attempt.last_valid_block_height,
                    poll_interval=opts.poll_interval,
                    use_subscription=opts.use_subscription,
                )
            except InvalidRequestError:
                raise
            except SubmissionEngineError as e:
                error = e
            else:
                self._emit(
                    EventKind.OUTCOME,
                    attempt_number,
                    priority_fee=bid,
                    signature=str(attempt.signature),
                    outcome=outcome.kind.value,
                )
                if outcome.is_confirmed:
                    records.append(self._record(attempt_number, bid, attempt, outcome=outcome))
                    return self._succeed(attempt.signature, records, started, attempt_number)
                error = self._outcome_error(outcome, attempt, opts)

            if error.attempt is None:
                error.attempt = attempt_number
            last_error = error
            is_last = attempt_number == opts.max_attempts

            delay: Optional[float] = None
            next_bid = bid
            if error.is_recoverable and not is_last:
                delay, next_bid = self._plan_retry(error, attempt_number, bid, policy, opts)

            records.append(self._record(
                attempt_number, bid, attempt,
                outcome=outcome, error=error, delay=delay,
            ))
            self._emit(
                EventKind.ATTEMPT_FAILED,
                attempt_number,
                priority_fee=bid,
                signature=str(attempt.signature) if attempt else None,
                outcome=outcome.kind.value if outcome else None,
                error=str(error),
            )

            if not error.is_recoverable or is_last:
                break

            self._emit(EventKind.RETRY_SCHEDULED, attempt_number, priority_fee=next_bid, delay=delay)
            await self._sleep(delay)

            reconciled = await self._reconcile(sent, records, opts.commitment, attempt_number)
            if reconciled is not None:
                return self._succeed(reconciled.signature, records, started, attempt_number)

            bid = next_bid

        reconciled = await self._reconcile(sent, records, opts.commitment, len(records))
        if reconciled is not None:
            return self._succeed(reconciled.signature, records, started, len(records))

        return self._fail(last_error, records, started)

    def _plan_retry(
        self,
        error: SubmissionEngineError,
        attempt_number: int,
        bid: int,
        policy: FeePolicy,
        opts: SubmitOptions,
    ) -> Tuple[float, int]:
        """Delay before the next attempt and the bid it should use."""
        if isinstance(error, RateLimitedError):
            delay = calculate_delay(
                attempt_number,
                opts.rate_limit_config(),
                ConstantBackoff(),
                retry_after=error.retry_after,
            )
            return delay, bid

        delay = calculate_delay(attempt_number, opts.backoff_config(), ExponentialBackoff())
        return delay, policy.next_bid(bid)

    def _outcome_error(
        self,
        outcome: ConfirmationOutcome,
        attempt: TransactionAttempt,
        opts: SubmitOptions,
    ) -> SubmissionEngineError:
        if outcome.kind == OutcomeKind.ON_CHAIN_FAILURE:
            return OnChainFailureError(
                message=f"Transaction failed on-chain: {outcome.reason}",
                signature=str(attempt.signature),
                attempt=attempt.attempt_number,
                reason=outcome.reason,
            )
        return ConfirmationTimeoutError(
            message=outcome.reason or "Transaction not confirmed",
            signature=str(attempt.signature),
            attempt=attempt.attempt_number,
            timeout=opts.confirmation_timeout,
            context={"source": outcome.source},
        )

    async def _reconcile(
        self,
        sent: List[Signature],
        records: List[AttemptRecord],
        commitment: str,
        attempt_number: int,
    ) -> Optional[ConfirmationOutcome]:
        """Look for any already-sent signature that has since confirmed."""
        outcome = await self.tracker.reconcile_many(sent, commitment)
        if outcome is None:
            return None

        landed = str(outcome.signature)
        for index, record in enumerate(records):
            if record.signature == landed:
                records[index] = replace(
                    record,
                    outcome=OutcomeKind.CONFIRMED.value,
                    reconciled=True,
                )
                break

        logger.info(f"Earlier attempt landed after all: {landed}")
        self._emit(EventKind.RECONCILED, attempt_number, signature=landed, outcome=outcome.kind.value)
        return outcome

    def _succeed(
        self,
        signature: Signature,
        records: List[AttemptRecord],
        started: float,
        attempt_number: int,
    ) -> SubmissionResult:
        self._emit(EventKind.SUCCEEDED, attempt_number, signature=str(signature))
        return SubmissionResult(
            signature=signature,
            attempts=tuple(records),
            elapsed=time.monotonic() - started,
        )

    def _fail(
        self,
        last_error: Optional[SubmissionEngineError],
        records: List[AttemptRecord],
        started: float,
    ) -> SubmissionResult:
        if last_error is not None and not last_error.is_recoverable:
            error = last_error
        else:
            error = ExhaustedError(
                message=f"Transaction not confirmed after {len(records)} attempt(s)",
                signature=records[-1].signature if records else None,
                attempt=len(records),
                attempts=len(records),
                last_cause=last_error,
            )
        logger.error(f"Submission failed: {error}")
        self._emit(EventKind.EXHAUSTED, len(records), error=str(error))
        return SubmissionResult(
            error=error,
            attempts=tuple(records),
            elapsed=time.monotonic() - started,
        )

    def _record(
        self,
        attempt_number: int,
        bid: int,
        attempt: Optional[TransactionAttempt],
        outcome: Optional[ConfirmationOutcome] = None,
        error: Optional[SubmissionEngineError] = None,
        delay: Optional[float] = None,
    ) -> AttemptRecord:
        return AttemptRecord(
            attempt_number=attempt_number,
            priority_fee=bid,
            blockhash=str(attempt.blockhash) if attempt else None,
            signature=str(attempt.signature) if attempt else None,
            outcome=outcome.kind.value if outcome else None,
            error_code=error.error_code if error else None,
            delay=delay,
        )

    def _emit(self, kind: EventKind, attempt: int, **fields) -> None:
        self.event_sink(SubmissionEvent(kind=kind, attempt=attempt, **fields))


async def submit(
    ledger,
    instructions: Sequence[Instruction],
    signer: Keypair,
    options: Optional[SubmitOptions] = None,
    event_sink: Optional[EventSink] = None,
) -> SubmissionResult:
    """One-off submission with a throwaway engine."""
    engine = SubmissionEngine(ledger, options, event_sink=event_sink)
    return await engine.submit(instructions, signer)


__all__ = [
    "SubmitOptions",
    "AttemptRecord",
    "SubmissionResult",
    "SubmissionEngine",
    "submit",
]
