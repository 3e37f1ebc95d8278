import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from solana_submitter.engine import SubmitOptions
from solana_submitter.instructions import sol_transfer

from .fakes import FakeLedger, RecordingSleep


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def payer():
    return Keypair()


@pytest.fixture
def instructions(payer):
    return sol_transfer(payer.pubkey(), Pubkey.new_unique(), 5_000)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def fast_options():
    return SubmitOptions(
        max_attempts=5,
        initial_priority_fee=1_000,
        priority_fee_ceiling=1_000_000,
        confirmation_timeout=0.1,
        poll_interval=0.01,
        base_backoff=1.0,
        max_backoff=20.0,
        rate_limit_backoff=7.0,
    )
