import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .exceptions import (
    BlockhashFetchError,
    BuildError,
    InvalidRequestError,
    SimulationRejectedError,
    classify_transport_error,
)
from .fees import fee_instructions

logger = logging.getLogger(__name__)

BLOCKHASH_REFRESHES = 3
BLOCKHASH_REFRESH_DELAY = 0.4  # about one slot


def parse_solana_error(error_data: Any) -> Tuple[str, Optional[int], List[str]]:
    logs = []
    error_code = None
    message = "Unknown error"

    if isinstance(error_data, dict):
        if "logs" in error_data:
            logs = error_data["logs"] or []

        if "err" in error_data:
            err = error_data["err"]
            if isinstance(err, dict):
                if "InstructionError" in err:
                    idx, inner_err = err["InstructionError"]
                    if isinstance(inner_err, dict):
                        error_type = list(inner_err.keys())[0]
                        message = f"Instruction {idx} failed: {error_type}"
                        if "Custom" in inner_err:
                            error_code = inner_err["Custom"]
                            message = f"Instruction {idx} failed with custom error {error_code}"
                    else:
                        message = f"Instruction {idx} failed: {inner_err}"
                else:
                    message = str(err)
            else:
                message = str(err)
        elif "message" in error_data:
            message = error_data["message"]
    elif isinstance(error_data, str):
        message = error_data

    return message, error_code, logs


@dataclass(frozen=True)
class TransactionAttempt:
    """One signed, serialized transaction built for a single attempt."""
    attempt_number: int
    priority_fee: int
    blockhash: Hash
    last_valid_block_height: int
    payload: bytes
    signature: Signature

    @property
    def transaction(self) -> VersionedTransaction:
        return VersionedTransaction.from_bytes(self.payload)


class TransactionBuilder:
    """
    Produces a fresh transaction for every attempt.

    Each ``build`` call fetches a new blockhash (never cached: an expired
    blockhash is the usual reason an otherwise valid retry fails). Given the
    previous attempt, the new blockhash must be newer than that attempt's, or
    the retry would re-sign an identical message. It then prepends the
    ComputeBudget fee instructions, signs with the payer and, when
    enabled, dry-runs the result so a transaction that is bound to fail is
    never sent.
    """

    def __init__(
        self,
        ledger,
        simulate: bool = True,
        compute_unit_limit: Optional[int] = None,
        commitment: str = "confirmed",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.simulate = simulate
        self.compute_unit_limit = compute_unit_limit
        self.commitment = commitment
        self._sleep = sleep

    async def fetch_blockhash(self) -> Tuple[Hash, int]:
        try:
            info = await self.ledger.get_latest_blockhash(self.commitment)
        except Exception as e:
            raise classify_transport_error(
                e, BlockhashFetchError, context={"stage": "get_latest_blockhash"}
            ) from e

        if info is None or info.blockhash is None:
            raise BlockhashFetchError(message="Failed to get recent blockhash")

        logger.debug(f"Fetched new blockhash: {info.blockhash}")
        return info.blockhash, info.last_valid_block_height

    async def fresh_blockhash(
        self,
        previous: Optional["TransactionAttempt"] = None,
    ) -> Tuple[Hash, int]:
        """Blockhash newer than ``previous``'s, refetched while the node lags behind."""
        for refresh in range(BLOCKHASH_REFRESHES + 1):
            if refresh:
                await self._sleep(BLOCKHASH_REFRESH_DELAY)
            blockhash, last_valid_block_height = await self.fetch_blockhash()
            if previous is None or (
                blockhash != previous.blockhash
                and last_valid_block_height > previous.last_valid_block_height
            ):
                return blockhash, last_valid_block_height
            logger.debug(
                f"Blockhash {blockhash} is not newer than attempt "
                f"{previous.attempt_number}'s {previous.blockhash}, refetching"
            )

        raise BlockhashFetchError(
            message="Blockhash did not advance past the previous attempt's",
            attempt=previous.attempt_number + 1,
            context={
                "blockhash": str(blockhash),
                "previous_blockhash": str(previous.blockhash),
                "last_valid_block_height": last_valid_block_height,
            },
        )

    def compile(
        self,
        instructions: Sequence[Instruction],
        signer: Keypair,
        priority_fee: int,
        blockhash: Hash,
    ) -> VersionedTransaction:
        if not instructions:
            raise InvalidRequestError(message="No instructions added to transaction.")

        all_instructions = fee_instructions(priority_fee, self.compute_unit_limit)
        all_instructions.extend(instructions)

        try:
            message = MessageV0.try_compile(
                payer=signer.pubkey(),
                instructions=all_instructions,
                address_lookup_table_accounts=[],
                recent_blockhash=blockhash
            )
            return VersionedTransaction(message, [signer])
        except Exception as e:
            raise BuildError(message=f"Failed to compile or sign transaction: {e}") from e

    async def preflight(self, tx: VersionedTransaction, attempt_number: int) -> None:
        signature = str(tx.signatures[0])
        try:
            result = await self.ledger.simulate(tx, self.commitment)
        except Exception as e:
            raise classify_transport_error(
                e,
                BuildError,
                signature=signature,
                attempt=attempt_number,
                context={"stage": "simulate"},
            ) from e

        if not result.success:
            logger.warning(f"Simulation failed (attempt {attempt_number}): {result.error}")
            raise SimulationRejectedError(
                message=f"Transaction simulation failed: {result.error}",
                signature=signature,
                attempt=attempt_number,
                logs=list(result.logs),
                units_consumed=result.units_consumed,
            )

    async def build(
        self,
        instructions: Sequence[Instruction],
        signer: Keypair,
        priority_fee: int,
        attempt_number: int = 1,
        previous: Optional[TransactionAttempt] = None,
    ) -> TransactionAttempt:
        if not instructions:
            raise InvalidRequestError(message="No instructions added to transaction.")

        blockhash, last_valid_block_height = await self.fresh_blockhash(previous)
        tx = self.compile(instructions, signer, priority_fee, blockhash)

        if self.simulate:
            await self.preflight(tx, attempt_number)

        return TransactionAttempt(
            attempt_number=attempt_number,
            priority_fee=priority_fee,
            blockhash=blockhash,
            last_valid_block_height=last_valid_block_height,
            payload=bytes(tx),
            signature=tx.signatures[0],
        )


__all__ = [
    "TransactionAttempt",
    "TransactionBuilder",
    "parse_solana_error",
]
