"""
Confirmation tracking for a sent transaction.

Two detection channels race into a single-resolution slot:

- polling: ``getSignatureStatuses`` every ``poll_interval`` seconds
- subscription: a one-shot ``signatureSubscribe`` notification

A backup deadline bounds the race. Whichever channel writes first decides
the outcome; the slot ignores every later write and the tracker cancels
the losing channel before returning. When the deadline fires, one last
direct status check runs before the attempt is declared timed out, since
websocket notifications are not guaranteed to be delivered.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Set

from solders.signature import Signature

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_CONFIRMATION_TIMEOUT = 45.0


class OutcomeKind(str, Enum):
    CONFIRMED = "confirmed"
    ON_CHAIN_FAILURE = "on_chain_failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ConfirmationOutcome:
    """Terminal result of tracking one attempt."""
    kind: OutcomeKind
    signature: Signature
    source: str
    reason: Optional[str] = None
    slot: Optional[int] = None

    @property
    def is_confirmed(self) -> bool:
        return self.kind == OutcomeKind.CONFIRMED

    @classmethod
    def confirmed(cls, signature: Signature, source: str, slot: Optional[int] = None) -> "ConfirmationOutcome":
        return cls(OutcomeKind.CONFIRMED, signature, source, slot=slot)

    @classmethod
    def failed(
        cls,
        signature: Signature,
        reason: str,
        source: str,
        slot: Optional[int] = None,
    ) -> "ConfirmationOutcome":
        return cls(OutcomeKind.ON_CHAIN_FAILURE, signature, source, reason=reason, slot=slot)

    @classmethod
    def timeout(
        cls,
        signature: Signature,
        reason: Optional[str] = None,
        source: str = "deadline",
    ) -> "ConfirmationOutcome":
        return cls(OutcomeKind.TIMEOUT, signature, source, reason=reason)

    @classmethod
    def from_status(
        cls,
        signature: Signature,
        status,
        commitment: str,
        source: str,
    ) -> Optional["ConfirmationOutcome"]:
        """Definitive outcome for a status, or None while still pending."""
        if status is None:
            return None
        if status.failed:
            return cls.failed(signature, status.err, source, slot=status.slot)
        if status.reached(commitment):
            return cls.confirmed(signature, source, slot=status.slot)
        return None


class OutcomeSlot:
    """First-writer-wins holder for one attempt's outcome."""

    def __init__(self):
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.dropped = 0

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, outcome: ConfirmationOutcome) -> bool:
        """Store ``outcome`` unless one is already stored. Returns True if stored."""
        if self._future.done():
            self.dropped += 1
            logger.debug(
                f"Ignoring late {outcome.kind.value} from {outcome.source} for {outcome.signature}"
            )
            return False
        self._future.set_result(outcome)
        return True

    def result(self) -> ConfirmationOutcome:
        return self._future.result()

    async def wait(self, timeout: Optional[float]) -> Optional[ConfirmationOutcome]:
        """Outcome, or None if nothing was written within ``timeout`` seconds."""
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        except asyncio.TimeoutError:
            return None


class ConfirmationTracker:
    """
    Decides the outcome of one sent signature.

    The tracker keeps no per-attempt state once ``track`` returns: every
    task it started has been cancelled and awaited, and every subscription
    it opened has been left (which unsubscribes and closes the socket).
    """

    def __init__(
        self,
        ledger,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        use_subscription: bool = True,
    ):
        self.ledger = ledger
        self.poll_interval = poll_interval
        self.use_subscription = use_subscription
        self.dropped_resolutions = 0
        self._active: Set[asyncio.Task] = set()

    @property
    def active_tasks(self) -> int:
        return len(self._active)

    async def track(
        self,
        signature: Signature,
        commitment: str = "confirmed",
        timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        last_valid_block_height: Optional[int] = None,
        poll_interval: Optional[float] = None,
        use_subscription: Optional[bool] = None,
    ) -> ConfirmationOutcome:
        if poll_interval is None:
            poll_interval = self.poll_interval
        if use_subscription is None:
            use_subscription = self.use_subscription
        slot = OutcomeSlot()
        started = time.monotonic()

        tasks = [
            asyncio.create_task(
                self._poll(slot, signature, commitment, last_valid_block_height, poll_interval),
                name=f"poll:{signature}",
            )
        ]
        if use_subscription:
            tasks.append(asyncio.create_task(
                self._listen(slot, signature, commitment),
                name=f"subscribe:{signature}",
            ))
        self._active.update(tasks)

        try:
            outcome = await slot.wait(timeout)
            if outcome is None:
                logger.warning(
                    f"No confirmation for {signature} after {timeout}s, checking status once more"
                )
                reconciled = await self.reconcile(signature, commitment)
                slot.resolve(reconciled or ConfirmationOutcome.timeout(
                    signature, reason=f"Not confirmed within {timeout}s"
                ))
                outcome = slot.result()
        finally:
            await self._cancel(tasks)
            self._active.difference_update(tasks)
            self.dropped_resolutions += slot.dropped

        elapsed = time.monotonic() - started
        if outcome.kind == OutcomeKind.CONFIRMED:
            logger.info(f"Transaction confirmed via {outcome.source} in {elapsed:.1f}s: {signature}")
        elif outcome.kind == OutcomeKind.ON_CHAIN_FAILURE:
            logger.error(f"Transaction failed on-chain ({outcome.reason}): {signature}")
        else:
            logger.warning(f"Transaction confirmation timed out after {elapsed:.1f}s: {signature}")
        return outcome

    async def reconcile(
        self,
        signature: Signature,
        commitment: str = "confirmed",
    ) -> Optional[ConfirmationOutcome]:
        """One direct status lookup, searching history. None if still unknown."""
        try:
            status = await self.ledger.get_signature_status(signature, search_history=True)
        except Exception as e:
            logger.warning(f"Status reconciliation failed for {signature}: {e}")
            return None
        return ConfirmationOutcome.from_status(signature, status, commitment, "reconcile")

    async def reconcile_many(
        self,
        signatures: Sequence[Signature],
        commitment: str = "confirmed",
    ) -> Optional[ConfirmationOutcome]:
        """First confirmed outcome among ``signatures``, checked in one request."""
        if not signatures:
            return None
        try:
            statuses = await self.ledger.get_signature_statuses(list(signatures), search_history=True)
        except Exception as e:
            logger.warning(f"Status reconciliation failed for {len(signatures)} signature(s): {e}")
            return None

        for signature, status in zip(signatures, statuses):
            outcome = ConfirmationOutcome.from_status(signature, status, commitment, "reconcile")
            if outcome is not None and outcome.is_confirmed:
                return outcome
        return None

    async def _poll(
        self,
        slot: OutcomeSlot,
        signature: Signature,
        commitment: str,
        last_valid_block_height: Optional[int],
        poll_interval: float,
    ) -> None:
        while not slot.done:
            try:
                status = await self.ledger.get_signature_status(signature)
            except Exception as e:
                logger.warning(f"Error checking transaction status: {e}")
            else:
                outcome = ConfirmationOutcome.from_status(signature, status, commitment, "poll")
                if outcome is not None:
                    slot.resolve(outcome)
                    return

                if (
                    status is None
                    and last_valid_block_height is not None
                    and await self._blockhash_expired(last_valid_block_height, commitment)
                ):
                    reconciled = await self.reconcile(signature, commitment)
                    slot.resolve(reconciled or ConfirmationOutcome.timeout(
                        signature,
                        reason=f"Block height exceeded {last_valid_block_height}",
                        source="expiry",
                    ))
                    return

            await asyncio.sleep(poll_interval)

    async def _blockhash_expired(self, last_valid_block_height: int, commitment: str) -> bool:
        try:
            height = await self.ledger.get_block_height(commitment)
        except Exception as e:
            logger.debug(f"Block height lookup failed: {e}")
            return False
        return height > last_valid_block_height

    async def _listen(self, slot: OutcomeSlot, signature: Signature, commitment: str) -> None:
        try:
            async with self.ledger.subscribe_signature(signature, commitment) as subscription:
                status = await subscription.wait()
        except Exception as e:
            logger.warning(f"Signature subscription unavailable, relying on polling: {e}")
            return

        outcome = ConfirmationOutcome.from_status(signature, status, commitment, "subscription")
        if outcome is not None:
            slot.resolve(outcome)

    async def _cancel(self, tasks: Iterable[asyncio.Task]) -> None:
        pending: List[asyncio.Task] = list(tasks)
        for task in pending:
            if not task.done():
                task.cancel()
        results = await asyncio.gather(*pending, return_exceptions=True)
        for task, result in zip(pending, results):
            if isinstance(result, Exception):
                logger.error(f"Detection task {task.get_name()} crashed: {result!r}")


__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_CONFIRMATION_TIMEOUT",
    "OutcomeKind",
    "ConfirmationOutcome",
    "OutcomeSlot",
    "ConfirmationTracker",
]
