"""Priority fee escalation and ComputeBudget instructions."""

import struct
from dataclasses import dataclass
from typing import List, Optional

from solders.instruction import Instruction
from solders.pubkey import Pubkey

COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")

SET_COMPUTE_UNIT_LIMIT = 0x02
SET_COMPUTE_UNIT_PRICE = 0x03

DEFAULT_INITIAL_PRIORITY_FEE = 1_000
DEFAULT_PRIORITY_FEE_CEILING = 1_000_000


def create_set_compute_unit_limit_instruction(units: int) -> Instruction:
    data = bytes([SET_COMPUTE_UNIT_LIMIT]) + struct.pack("<I", units)
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        accounts=[],
        data=data
    )


def create_set_compute_unit_price_instruction(micro_lamports: int) -> Instruction:
    data = bytes([SET_COMPUTE_UNIT_PRICE]) + struct.pack("<Q", micro_lamports)
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        accounts=[],
        data=data
    )


def fee_instructions(
    priority_fee: int,
    compute_unit_limit: Optional[int] = None,
) -> List[Instruction]:
    """ComputeBudget instructions to prepend to a base instruction set."""
    instructions = []
    if compute_unit_limit is not None:
        instructions.append(create_set_compute_unit_limit_instruction(compute_unit_limit))
    instructions.append(create_set_compute_unit_price_instruction(priority_fee))
    return instructions


@dataclass(frozen=True)
class FeePolicy:
    """
    Priority fee bid for each attempt of one logical submission.

    Attempt 1 bids ``initial_bid``; every recoverable retry multiplies the
    previous bid by ``multiplier``, never exceeding ``ceiling``. The policy
    holds no per-submission state: the caller threads the current bid
    through its loop.
    """
    initial_bid: int = DEFAULT_INITIAL_PRIORITY_FEE
    ceiling: Optional[int] = DEFAULT_PRIORITY_FEE_CEILING
    multiplier: int = 2

    def __post_init__(self):
        if self.initial_bid < 0:
            raise ValueError("initial_bid must be >= 0")
        if self.ceiling is not None and self.ceiling < self.initial_bid:
            raise ValueError("ceiling must be >= initial_bid")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def initial(self) -> int:
        return self.initial_bid

    def next_bid(self, previous: int) -> int:
        bid = previous * self.multiplier
        if self.ceiling is not None:
            bid = min(bid, self.ceiling)
        return max(bid, previous)

    def bid_for_attempt(self, attempt: int) -> int:
        """Bid after ``attempt - 1`` consecutive escalations."""
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        bid = self.initial_bid * self.multiplier ** (attempt - 1)
        if self.ceiling is not None:
            bid = min(bid, self.ceiling)
        return bid


__all__ = [
    "COMPUTE_BUDGET_PROGRAM_ID",
    "DEFAULT_INITIAL_PRIORITY_FEE",
    "DEFAULT_PRIORITY_FEE_CEILING",
    "FeePolicy",
    "create_set_compute_unit_limit_instruction",
    "create_set_compute_unit_price_instruction",
    "fee_instructions",
]
