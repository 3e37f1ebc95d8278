"""
In-memory ledger whose behaviour is scripted per send.

Each ``send_raw_transaction`` consumes the next plan from ``plans``
(default ``"confirm"``):

- ``confirm``: the first status poll reports the signature confirmed
- ``confirm_ws``: only the websocket subscription reports it confirmed
- ``race``: polling and the subscription both report it confirmed at once
- ``never``: no status is ever available
- ``late``: only a history search (the final reconciliation) finds it
- ``fail``: the status carries an on-chain error
- ``429``: the send call is rate limited (HTTP 429)
- ``send_error``: the send call fails at the transport layer
- ``duplicate``: the RPC rejects the send as already processed
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

import httpx
from solders.hash import Hash
from solders.transaction import VersionedTransaction

from solana_submitter.ledger import BlockhashInfo, SignatureStatus, SimulationResult

ONCHAIN_ERROR = "Instruction 2 failed with custom error 1"


def rate_limit_error(retry_after: Optional[str] = None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://rpc.test")
    headers = {"Retry-After": retry_after} if retry_after is not None else {}
    response = httpx.Response(429, headers=headers, request=request)
    return httpx.HTTPStatusError("429 Too Many Requests", request=request, response=response)


class FakeSubscription:
    def __init__(self, ledger: "FakeLedger", signature, commitment: str):
        self.ledger = ledger
        self.signature = signature
        self.commitment = commitment

    async def wait(self) -> SignatureStatus:
        plan = self.ledger.behaviors.get(str(self.signature))
        if plan in ("confirm_ws", "race"):
            return SignatureStatus(slot=7, confirmation_status=self.commitment)
        await asyncio.Event().wait()


class FakeLedger:
    def __init__(
        self,
        plans: Optional[List[str]] = None,
        block_height: int = 100,
        valid_for: int = 150,
    ):
        self.plans = list(plans or [])
        self.block_height = block_height
        self.valid_for = valid_for
        self.behaviors: Dict[str, str] = {}
        self.send_plans: List[str] = []
        self.sent: List[VersionedTransaction] = []
        self.blockhashes: List[Hash] = []
        self.stale_reads = 0
        self._latest: Optional[BlockhashInfo] = None
        self.status_requests: List[List[str]] = []
        self.history_requests: List[List[str]] = []
        self.simulation_error: Optional[str] = None
        self.simulate_calls = 0
        self.subscription_error: Optional[Exception] = None
        self.open_subscriptions = 0
        self.subscriptions_opened = 0
        self.balances: Dict[str, int] = {}
        self.on_send: Optional[Callable[[int], None]] = None
        self.retry_after: Optional[str] = None
        self.closed = False

    @property
    def sent_signatures(self) -> List[str]:
        return [str(tx.signatures[0]) for tx in self.sent]

    def land(self, signature) -> None:
        """Make an already sent signature show up as confirmed."""
        self.behaviors[str(signature)] = "confirm"

    async def get_latest_blockhash(self, commitment=None) -> BlockhashInfo:
        """A new blockhash per call, unless ``stale_reads`` asks for repeats of the last one."""
        if self.stale_reads and self._latest is not None:
            self.stale_reads -= 1
        else:
            height = self.block_height + self.valid_for + len(self.blockhashes)
            self._latest = BlockhashInfo(Hash.new_unique(), height)
        self.blockhashes.append(self._latest.blockhash)
        return self._latest

    async def get_block_height(self, commitment=None) -> int:
        return self.block_height

    async def get_balance(self, pubkey, commitment=None) -> int:
        return self.balances.get(str(pubkey), 0)

    async def simulate(self, tx, commitment=None) -> SimulationResult:
        self.simulate_calls += 1
        if self.simulation_error:
            return SimulationResult(
                success=False,
                logs=["Program log: Error: insufficient funds"],
                units_consumed=1_200,
                error=self.simulation_error,
            )
        return SimulationResult(success=True, logs=[], units_consumed=1_200, error=None)

    async def send_raw_transaction(self, payload: bytes):
        tx = VersionedTransaction.from_bytes(payload)
        signature = tx.signatures[0]
        plan = self.plans.pop(0) if self.plans else "confirm"
        self.send_plans.append(plan)
        if self.on_send is not None:
            self.on_send(len(self.send_plans))

        if plan == "429":
            raise rate_limit_error(self.retry_after)
        if plan == "send_error":
            raise httpx.ConnectError("Connection reset by peer")
        if plan == "duplicate":
            raise RuntimeError("Transaction simulation failed: This transaction has already been processed")

        self.sent.append(tx)
        self.behaviors[str(signature)] = plan
        return signature

    def _status(self, signature, search_history: bool) -> Optional[SignatureStatus]:
        plan = self.behaviors.get(str(signature))
        if plan in ("confirm", "race") or (plan == "late" and search_history):
            return SignatureStatus(slot=5, confirmations=1, confirmation_status="confirmed")
        if plan == "fail":
            return SignatureStatus(slot=5, err=ONCHAIN_ERROR, confirmation_status="confirmed")
        return None

    async def get_signature_statuses(self, signatures, search_history: bool = False):
        names = [str(s) for s in signatures]
        self.status_requests.append(names)
        if search_history:
            self.history_requests.append(names)
        return [self._status(s, search_history) for s in signatures]

    async def get_signature_status(self, signature, search_history: bool = False):
        statuses = await self.get_signature_statuses([signature], search_history)
        return statuses[0]

    @asynccontextmanager
    async def subscribe_signature(self, signature, commitment: str):
        if self.subscription_error is not None:
            raise self.subscription_error
        self.open_subscriptions += 1
        self.subscriptions_opened += 1
        try:
            yield FakeSubscription(self, signature, commitment)
        finally:
            self.open_subscriptions -= 1

    async def close(self) -> None:
        self.closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()


class RecordingSleep:
    """Stands in for asyncio.sleep between attempts; records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)
