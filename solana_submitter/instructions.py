"""
Base instruction sets handed to the submission engine.

The engine only adds ComputeBudget instructions; everything a transfer or
burn needs is built here.
"""

from decimal import Decimal, InvalidOperation
from typing import List, Optional, Union

import base58
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.models import BurnCheckedParams, TransferCheckedParams
from spl.token.instructions import (
    burn_checked,
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

from .exceptions import InvalidRequestError

LAMPORTS_PER_SOL = 1_000_000_000
MAX_DECIMALS = 18

PubkeyLike = Union[str, Pubkey]


def to_pubkey(value: PubkeyLike, name: str = "address") -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    try:
        return Pubkey.from_string(str(value).strip())
    except ValueError as e:
        raise InvalidRequestError(
            message=f"Invalid {name}: {value}",
            context={"error": str(e)},
        ) from e


def ui_to_base_units(amount: Union[str, int, float, Decimal], decimals: int) -> int:
    """
    Convert a UI amount to integer base units.

    Decimal arithmetic keeps ``0.1`` with 9 decimals at exactly
    100_000_000. Amounts with more precision than ``decimals`` are rejected
    rather than rounded.
    """
    if not 0 <= decimals <= MAX_DECIMALS:
        raise InvalidRequestError(message=f"decimals must be between 0 and {MAX_DECIMALS}")
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise InvalidRequestError(message=f"Invalid amount: {amount}") from e
    if not value.is_finite() or value <= 0:
        raise InvalidRequestError(message=f"Amount must be positive: {amount}")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidRequestError(
            message=f"Amount {amount} has more than {decimals} decimal places",
        )
    return int(scaled)


def keypair_from_base58(secret: str, expected_pubkey: Optional[str] = None) -> Keypair:
    """Decode a base58 64-byte secret key, optionally checking its public key."""
    if not secret or not secret.strip():
        raise InvalidRequestError(message="Private key is empty")
    try:
        key_bytes = base58.b58decode(secret.strip())
    except ValueError as e:
        raise InvalidRequestError(message=f"Private key is not valid base58: {e}") from e

    if len(key_bytes) != 64:
        raise InvalidRequestError(
            message=f"Private key decoded to {len(key_bytes)} bytes, expected 64",
        )

    try:
        keypair = Keypair.from_bytes(key_bytes)
    except ValueError as e:
        raise InvalidRequestError(message=f"Invalid private key: {e}") from e

    if expected_pubkey is not None and str(keypair.pubkey()) != expected_pubkey.strip():
        raise InvalidRequestError(
            message="Provided public key does not match the private key",
            context={"expected": expected_pubkey},
        )
    return keypair


def sol_transfer(sender: PubkeyLike, recipient: PubkeyLike, lamports: int) -> List[Instruction]:
    if lamports <= 0:
        raise InvalidRequestError(message="lamports must be positive")
    return [
        transfer(TransferParams(
            from_pubkey=to_pubkey(sender, "sender"),
            to_pubkey=to_pubkey(recipient, "recipient"),
            lamports=lamports,
        ))
    ]


def token_burn(
    owner: PubkeyLike,
    mint: PubkeyLike,
    amount: int,
    decimals: int,
) -> List[Instruction]:
    """``burn_checked`` of ``amount`` base units from the owner's associated token account."""
    if amount <= 0:
        raise InvalidRequestError(message="Burn amount must be positive")
    owner_key = to_pubkey(owner, "owner")
    mint_key = to_pubkey(mint, "mint")
    return [
        burn_checked(BurnCheckedParams(
            program_id=TOKEN_PROGRAM_ID,
            account=get_associated_token_address(owner_key, mint_key),
            mint=mint_key,
            owner=owner_key,
            amount=amount,
            decimals=decimals,
        ))
    ]


def token_transfer(
    owner: PubkeyLike,
    recipient: PubkeyLike,
    mint: PubkeyLike,
    amount: int,
    decimals: int,
    create_recipient_account: bool = False,
) -> List[Instruction]:
    """
    ``transfer_checked`` between the owner's and recipient's associated
    token accounts. With ``create_recipient_account`` the recipient's
    account is created first, paid for by the owner.
    """
    if amount <= 0:
        raise InvalidRequestError(message="Transfer amount must be positive")
    owner_key = to_pubkey(owner, "owner")
    recipient_key = to_pubkey(recipient, "recipient")
    mint_key = to_pubkey(mint, "mint")

    instructions: List[Instruction] = []
    if create_recipient_account:
        instructions.append(create_associated_token_account(owner_key, recipient_key, mint_key))

    instructions.append(transfer_checked(TransferCheckedParams(
        program_id=TOKEN_PROGRAM_ID,
        source=get_associated_token_address(owner_key, mint_key),
        mint=mint_key,
        dest=get_associated_token_address(recipient_key, mint_key),
        owner=owner_key,
        amount=amount,
        decimals=decimals,
    )))
    return instructions


__all__ = [
    "LAMPORTS_PER_SOL",
    "to_pubkey",
    "ui_to_base_units",
    "keypair_from_base58",
    "sol_transfer",
    "token_burn",
    "token_transfer",
]
