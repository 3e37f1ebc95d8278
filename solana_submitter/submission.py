import logging

from solders.signature import Signature

from .exceptions import SubmissionError, classify_transport_error
from .transaction import TransactionAttempt

logger = logging.getLogger(__name__)


class SubmissionChannel:
    """
    Sends a built attempt exactly once.

    Retrying belongs to the engine, which has to rebuild and re-sign with a
    new blockhash and fee; this channel only reports what the RPC said.
    """

    def __init__(self, ledger):
        self.ledger = ledger

    async def send(self, attempt: TransactionAttempt) -> Signature:
        try:
            signature = await self.ledger.send_raw_transaction(attempt.payload)
        except Exception as e:
            error = classify_transport_error(
                e,
                SubmissionError,
                signature=str(attempt.signature),
                attempt=attempt.attempt_number,
            )
            logger.warning(
                f"Transaction send failed (attempt {attempt.attempt_number}): {error.message}"
            )
            raise error from e

        if signature is None:
            raise SubmissionError(
                message="Empty response from send_raw_transaction",
                signature=str(attempt.signature),
                attempt=attempt.attempt_number,
            )

        if signature != attempt.signature:
            logger.warning(
                f"RPC returned signature {signature}, expected {attempt.signature}"
            )

        logger.info(f"Transaction sent (attempt {attempt.attempt_number}): {signature}")
        return signature


__all__ = ["SubmissionChannel"]
