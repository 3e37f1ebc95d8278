"""
Solana Transaction Submitter

Sends signed transactions, escalates the priority fee on retries and
confirms them through polling and websocket subscriptions.
"""

__version__ = "1.0.0"

from .engine import SubmissionEngine, SubmissionResult, SubmitOptions, submit
from .exceptions import ExhaustedError, InvalidRequestError, SubmitterError
from .ledger import LedgerClient

__all__ = [
    "SubmissionEngine",
    "SubmissionResult",
    "SubmitOptions",
    "submit",
    "LedgerClient",
    "SubmitterError",
    "InvalidRequestError",
    "ExhaustedError",
]
