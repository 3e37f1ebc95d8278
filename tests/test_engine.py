"""
Tests for the retry coordinator.

Covers fee escalation across attempts, blockhash freshness, resource
release between attempts, rate-limit handling, reconciliation of earlier
signatures and the terminal error contract.
"""

from dataclasses import replace

import pytest

from solana_submitter.engine import SubmissionEngine, SubmitOptions, submit
from solana_submitter.events import EventKind
from solana_submitter.exceptions import (
    ConfirmationTimeoutError,
    ExhaustedError,
    InvalidRequestError,
    OnChainFailureError,
    SimulationRejectedError,
)

from .fakes import ONCHAIN_ERROR, FakeLedger


def make_engine(ledger, options, sleep, events=None):
    return SubmissionEngine(
        ledger,
        options,
        event_sink=events.append if events is not None else None,
        sleep=sleep,
    )


# =============================================================================
# Happy path
# =============================================================================

class TestFirstAttempt:
    """A submission confirmed on the first polling check."""

    @pytest.mark.asyncio
    async def test_confirmed_on_first_poll(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["confirm"])
        engine = make_engine(ledger, fast_options, sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert str(result.signature) == ledger.sent_signatures[0]
        assert len(result.attempts) == 1
        assert result.attempts[0].outcome == "confirmed"
        assert result.attempts[0].priority_fee == 1_000
        assert len(ledger.sent) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_scenario_a_returns_quickly(self, instructions, payer, fast_options, sleep):
        """Scenario A: confirmed within the first attempt, one record."""
        ledger = FakeLedger(["confirm"])
        engine = make_engine(ledger, replace(fast_options, poll_interval=2.0), sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert result.elapsed < 2.0
        assert len(result.attempts) == 1
        assert result.error is None
        result.raise_for_error()

    @pytest.mark.asyncio
    async def test_signature_matches_signed_transaction(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger()
        engine = make_engine(ledger, fast_options, sleep)

        result = await engine.submit(instructions, payer)

        assert result.signature == ledger.sent[0].signatures[0]
        assert ledger.sent[0].message.account_keys[0] == payer.pubkey()

    @pytest.mark.asyncio
    async def test_module_level_submit(self, instructions, payer, fast_options):
        ledger = FakeLedger(["confirm"])

        result = await submit(ledger, instructions, payer, fast_options)

        assert result.success


# =============================================================================
# Retries
# =============================================================================

class TestRetries:
    """Escalation, freshness and cleanup across attempts."""

    @pytest.mark.asyncio
    async def test_scenario_b_timeouts_then_confirm(self, instructions, payer, fast_options, sleep):
        """Scenario B: two timeouts, success on attempt 3 at four times the initial fee."""
        ledger = FakeLedger(["never", "never", "confirm"])
        events = []
        between_attempts = []

        def sink(event):
            events.append(event)
            if event.kind == EventKind.ATTEMPT_STARTED and event.attempt > 1:
                between_attempts.append((engine.tracker.active_tasks, ledger.open_subscriptions))

        engine = SubmissionEngine(ledger, fast_options, event_sink=sink, sleep=sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert str(result.signature) == ledger.sent_signatures[2]
        assert [r.priority_fee for r in result.attempts] == [1_000, 2_000, 4_000]
        assert [r.outcome for r in result.attempts] == ["timeout", "timeout", "confirmed"]
        assert [r.error_code for r in result.attempts[:2]] == ["TX_006", "TX_006"]

        assert between_attempts == [(0, 0), (0, 0)]
        assert engine.tracker.active_tasks == 0
        assert ledger.open_subscriptions == 0
        assert ledger.subscriptions_opened == 3

    @pytest.mark.asyncio
    async def test_exponential_backoff_between_attempts(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["never", "never", "never", "confirm"])
        engine = make_engine(ledger, fast_options, sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert [r.delay for r in result.attempts] == [1.0, 2.0, 4.0, None]

    @pytest.mark.asyncio
    async def test_fee_doubles_until_ceiling(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["never", "never", "never", "confirm"])
        options = replace(fast_options, priority_fee_ceiling=3_000)
        engine = make_engine(ledger, options, sleep)

        result = await engine.submit(instructions, payer)

        assert [r.priority_fee for r in result.attempts] == [1_000, 2_000, 3_000, 3_000]

    @pytest.mark.asyncio
    async def test_fresh_blockhash_every_attempt(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["never", "fail", "confirm"])
        engine = make_engine(ledger, fast_options, sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert len(ledger.blockhashes) == 3
        blockhashes = [r.blockhash for r in result.attempts]
        assert len(set(blockhashes)) == 3
        assert blockhashes == [str(h) for h in ledger.blockhashes]
        assert len(set(ledger.sent_signatures)) == 3

    @pytest.mark.asyncio
    async def test_send_error_is_retried_with_higher_fee(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["send_error", "confirm"])
        engine = make_engine(ledger, fast_options, sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert result.attempts[0].error_code == "TX_004"
        assert result.attempts[0].outcome is None
        assert result.attempts[1].priority_fee == 2_000

    @pytest.mark.asyncio
    async def test_events_follow_attempt_lifecycle(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["fail", "confirm"])
        events = []
        engine = make_engine(ledger, fast_options, sleep, events)

        await engine.submit(instructions, payer)

        kinds = [e.kind for e in events]
        assert kinds == [
            EventKind.ATTEMPT_STARTED,
            EventKind.SENT,
            EventKind.OUTCOME,
            EventKind.ATTEMPT_FAILED,
            EventKind.RETRY_SCHEDULED,
            EventKind.ATTEMPT_STARTED,
            EventKind.SENT,
            EventKind.OUTCOME,
            EventKind.SUCCEEDED,
        ]
        retry = events[4]
        assert retry.priority_fee == 2_000
        assert retry.delay == 1.0


# =============================================================================
# Rate limiting
# =============================================================================

class TestRateLimiting:
    """Scenario D: a 429 waits without touching the fee bid."""

    @pytest.mark.asyncio
    async def test_rate_limit_keeps_fee(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["429", "confirm"])
        engine = make_engine(ledger, fast_options, sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert result.attempts[0].error_code == "RPC_003"
        assert result.attempts[0].priority_fee == result.attempts[1].priority_fee == 1_000
        assert sleep.delays == [7.0]

    @pytest.mark.asyncio
    async def test_rate_limit_then_timeout_escalates_from_unchanged_bid(
        self, instructions, payer, fast_options, sleep
    ):
        ledger = FakeLedger(["429", "never", "confirm"])
        engine = make_engine(ledger, fast_options, sleep)

        result = await engine.submit(instructions, payer)

        assert [r.priority_fee for r in result.attempts] == [1_000, 1_000, 2_000]
        assert sleep.delays == [7.0, 2.0]

    @pytest.mark.asyncio
    async def test_server_retry_after_is_honored(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["429", "confirm"])
        ledger.retry_after = "3"
        engine = make_engine(ledger, fast_options, sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert sleep.delays == [3.0]

    @pytest.mark.asyncio
    async def test_rate_limited_retry_waits_for_newer_blockhash(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["429", "confirm"])
        ledger.stale_reads = 1
        engine = make_engine(ledger, fast_options, sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        first, second = result.attempts
        assert first.priority_fee == second.priority_fee
        assert first.blockhash != second.blockhash
        assert first.signature != second.signature
        assert sleep.delays == [7.0, 0.4]

    @pytest.mark.asyncio
    async def test_server_retry_after_is_capped(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["429", "confirm"])
        ledger.retry_after = "86400"
        engine = make_engine(ledger, fast_options, sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert sleep.delays == [60.0]

    @pytest.mark.asyncio
    async def test_rate_limit_cap_below_backoff_rejected(self, instructions, payer, fast_options, sleep):
        engine = make_engine(FakeLedger(), fast_options, sleep)

        with pytest.raises(InvalidRequestError):
            await engine.submit(instructions, payer, replace(fast_options, max_rate_limit_backoff=1.0))

    @pytest.mark.asyncio
    async def test_blockhash_stuck_in_one_slot_is_never_reused(self, instructions, payer, fast_options, sleep):
        options = replace(fast_options, max_attempts=2)
        ledger = FakeLedger(["429", "confirm"])
        ledger.stale_reads = 100
        engine = make_engine(ledger, options, sleep)

        result = await engine.submit(instructions, payer)

        assert not result.success
        assert result.error.last_cause.error_code == "TX_002"
        assert ledger.send_plans == ["429"]
        assert len(set(ledger.blockhashes)) == 1
        assert result.attempts[1].signature is None
        assert sleep.delays == [7.0, 0.4, 0.4, 0.4]


# =============================================================================
# Terminal outcomes
# =============================================================================

class TestExhaustion:
    """Scenario C and the terminal error contract."""

    @pytest.mark.asyncio
    async def test_scenario_c_on_chain_failure_every_attempt(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["fail"] * 3)
        engine = make_engine(ledger, replace(fast_options, max_attempts=3), sleep)

        result = await engine.submit(instructions, payer)

        assert not result.success
        assert result.signature is None
        assert isinstance(result.error, ExhaustedError)
        assert result.error.attempts == 3
        assert isinstance(result.error.last_cause, OnChainFailureError)
        assert result.error.last_cause.reason == ONCHAIN_ERROR
        assert result.error.last_cause.attempt == 3
        assert len(ledger.sent) == 3
        assert [r.outcome for r in result.attempts] == ["on_chain_failure"] * 3

    @pytest.mark.asyncio
    async def test_raise_for_error(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["never"] * 2)
        engine = make_engine(ledger, replace(fast_options, max_attempts=2), sleep)

        result = await engine.submit(instructions, payer)

        with pytest.raises(ExhaustedError) as exc_info:
            result.raise_for_error()
        assert isinstance(exc_info.value.last_cause, ConfirmationTimeoutError)
        assert exc_info.value.to_dict()["last_cause"]["error_code"] == "TX_006"

    @pytest.mark.asyncio
    async def test_no_backoff_after_last_attempt(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["fail"] * 2)
        engine = make_engine(ledger, replace(fast_options, max_attempts=2), sleep)

        result = await engine.submit(instructions, payer)

        assert sleep.delays == [1.0]
        assert result.attempts[-1].delay is None

    @pytest.mark.asyncio
    async def test_simulation_rejection_never_sends(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger()
        ledger.simulation_error = "Instruction 0 failed: InsufficientFunds"
        engine = make_engine(ledger, replace(fast_options, max_attempts=2), sleep)

        result = await engine.submit(instructions, payer)

        assert isinstance(result.error, ExhaustedError)
        assert isinstance(result.error.last_cause, SimulationRejectedError)
        assert result.error.last_cause.logs
        assert ledger.sent == []
        assert ledger.simulate_calls == 2

    @pytest.mark.asyncio
    async def test_simulation_can_be_disabled(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger()
        ledger.simulation_error = "would fail"
        engine = make_engine(ledger, replace(fast_options, simulate=False), sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert ledger.simulate_calls == 0


# =============================================================================
# Reconciliation
# =============================================================================

class TestReconciliation:
    """Earlier signatures are checked before retrying and before giving up."""

    @pytest.mark.asyncio
    async def test_earlier_signature_found_after_duplicate_send(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["never", "duplicate"])

        def on_send(count):
            if count == 2:
                ledger.land(ledger.sent[0].signatures[0])

        ledger.on_send = on_send
        engine = make_engine(ledger, fast_options, sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert result.signature == ledger.sent[0].signatures[0]
        assert result.reconciled
        assert result.attempts[0].reconciled
        assert result.attempts[0].outcome == "confirmed"
        assert result.attempts[1].error_code == "TX_004"
        assert len(ledger.send_plans) == 2

    @pytest.mark.asyncio
    async def test_reconciles_before_declaring_exhaustion(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["never", "never"])

        def sink(event):
            if event.kind == EventKind.ATTEMPT_FAILED and event.attempt == 2:
                ledger.land(ledger.sent[0].signatures[0])

        engine = SubmissionEngine(ledger, replace(fast_options, max_attempts=2), event_sink=sink, sleep=sleep)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert result.signature == ledger.sent[0].signatures[0]
        assert result.attempts[0].reconciled
        assert not result.attempts[1].reconciled

    @pytest.mark.asyncio
    async def test_one_batched_lookup_for_all_sent_signatures(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["never", "never"])
        engine = make_engine(ledger, replace(fast_options, max_attempts=2), sleep)

        await engine.submit(instructions, payer)

        assert ledger.history_requests[-1] == ledger.sent_signatures


# =============================================================================
# Detection race
# =============================================================================

class TestDetectionRace:
    """Scenario E: both channels fire, the caller sees one confirmation."""

    @pytest.mark.asyncio
    async def test_single_confirmation_delivered(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger(["race"])
        events = []
        engine = make_engine(ledger, fast_options, sleep, events)

        result = await engine.submit(instructions, payer)

        assert result.success
        assert len(result.attempts) == 1
        assert [e.kind for e in events].count(EventKind.SUCCEEDED) == 1
        assert [e.kind for e in events].count(EventKind.OUTCOME) == 1
        assert engine.tracker.dropped_resolutions == 1
        assert engine.tracker.active_tasks == 0


# =============================================================================
# Invalid requests
# =============================================================================

class TestInvalidRequests:
    """Requests that can never succeed fail before any network call."""

    @pytest.mark.asyncio
    async def test_empty_instructions(self, payer, fast_options, sleep):
        ledger = FakeLedger()
        engine = make_engine(ledger, fast_options, sleep)

        with pytest.raises(InvalidRequestError):
            await engine.submit([], payer)
        assert ledger.blockhashes == []

    @pytest.mark.asyncio
    async def test_invalid_options(self, instructions, payer, fast_options, sleep):
        ledger = FakeLedger()
        engine = make_engine(ledger, fast_options, sleep)

        with pytest.raises(InvalidRequestError):
            await engine.submit(instructions, payer, replace(fast_options, max_attempts=0))
        with pytest.raises(InvalidRequestError):
            await engine.submit(
                instructions,
                payer,
                replace(fast_options, initial_priority_fee=10, priority_fee_ceiling=5),
            )
        assert ledger.sent == []

    def test_options_from_settings(self):
        from solana_submitter.config import SubmissionSettings

        settings = SubmissionSettings(max_attempts=3, initial_priority_fee=500, poll_interval=1.5)
        options = SubmitOptions.from_settings(settings, "finalized")

        assert options.max_attempts == 3
        assert options.initial_priority_fee == 500
        assert options.poll_interval == 1.5
        assert options.commitment == "finalized"
        options.validate()
