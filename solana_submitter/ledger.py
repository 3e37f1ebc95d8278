"""
Ledger RPC access used by the submission engine.

``LedgerClient`` wraps a solana-py ``AsyncClient`` for request/response
calls and opens aiohttp websockets for one-shot signature subscriptions.
It is shared read-only across attempts; tests substitute any object with
the same coroutine methods.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Sequence

import aiohttp
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.models import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .config import http_to_ws
from .exceptions import ConfirmationTimeoutError, SubscriptionError
from .transaction import parse_solana_error

logger = logging.getLogger(__name__)

COMMITMENT_RANK = {
    "processed": 0,
    "confirmed": 1,
    "finalized": 2,
}

DEFAULT_RPC_TIMEOUT = 30
WS_HEARTBEAT = 30.0


def normalize_commitment(value: Any) -> Optional[str]:
    """Map solders/solana-py commitment representations to a plain level name."""
    if value is None:
        return None
    text = str(value).lower()
    for level in ("finalized", "confirmed", "processed"):
        if level in text:
            return level
    return None


def format_transaction_error(err: Any) -> Optional[str]:
    if err is None:
        return None
    if isinstance(err, dict):
        message, _, _ = parse_solana_error({"err": err})
        return message
    if isinstance(err, list):
        return json.dumps(err)
    return str(err)


@dataclass(frozen=True)
class BlockhashInfo:
    blockhash: Hash
    last_valid_block_height: int


@dataclass(frozen=True)
class SignatureStatus:
    """Network view of one signature."""
    slot: Optional[int] = None
    confirmations: Optional[int] = None
    err: Optional[str] = None
    confirmation_status: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.err is not None

    def reached(self, commitment: str) -> bool:
        """True once the status is at least as durable as ``commitment``."""
        level = normalize_commitment(self.confirmation_status)
        target = normalize_commitment(commitment) or "confirmed"
        if level is None:
            return False
        return COMMITMENT_RANK[level] >= COMMITMENT_RANK[target]


@dataclass
class SimulationResult:
    success: bool
    logs: List[str]
    units_consumed: Optional[int]
    error: Optional[str]


class SignatureSubscription:
    """
    One-shot ``signatureSubscribe`` over a dedicated websocket.

    Usage:
        async with ledger.subscribe_signature(signature, "confirmed") as sub:
            status = await sub.wait()

    Leaving the context unsubscribes and closes the socket, whether or not
    a notification arrived.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ws_url: str,
        signature: Signature,
        commitment: str,
    ):
        self.session = session
        self.ws_url = ws_url
        self.signature = signature
        self.commitment = commitment
        self.subscription_id: Optional[int] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def __aenter__(self) -> "SignatureSubscription":
        try:
            self._ws = await self.session.ws_connect(self.ws_url, heartbeat=WS_HEARTBEAT)
            await self._ws.send_json({
                "jsonrpc": "2.0",
                "id": 1,
                "method": "signatureSubscribe",
                "params": [str(self.signature), {"commitment": self.commitment}],
            })
        except (aiohttp.ClientError, OSError) as e:
            await self._close()
            raise SubscriptionError(
                message=f"Could not subscribe to signature: {e}",
                context={"signature": str(self.signature)},
            ) from e
        return self

    async def __aexit__(self, *args):
        await self._close()

    async def wait(self) -> SignatureStatus:
        """Block until the network reports the signature at the target commitment."""
        if self._ws is None:
            raise SubscriptionError(message="Subscription is not open")

        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                data = json.loads(msg.data)

                if "error" in data:
                    raise SubscriptionError(
                        message=f"signatureSubscribe rejected: {data['error']}",
                        context={"signature": str(self.signature)},
                    )

                if data.get("id") == 1 and "result" in data:
                    self.subscription_id = data["result"]
                    logger.debug(f"Subscribed to {self.signature} (id={self.subscription_id})")
                    continue

                if data.get("method") == "signatureNotification":
                    result = data.get("params", {}).get("result", {})
                    value = result.get("value") or {}
                    err = value.get("err") if isinstance(value, dict) else None
                    return SignatureStatus(
                        slot=result.get("context", {}).get("slot"),
                        err=format_transaction_error(err),
                        confirmation_status=self.commitment,
                    )

            elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break

        raise SubscriptionError(
            message="Websocket closed before the signature notification arrived",
            context={"signature": str(self.signature)},
        )

    async def _close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None or ws.closed:
            return
        if self.subscription_id is not None:
            try:
                await ws.send_json({
                    "jsonrpc": "2.0",
                    "id": 2,
                    "method": "signatureUnsubscribe",
                    "params": [self.subscription_id],
                })
            except (aiohttp.ClientError, ConnectionResetError) as e:
                logger.debug(f"signatureUnsubscribe failed for {self.signature}: {e}")
        await ws.close()


class LedgerClient:
    """RPC collaborator for the engine: HTTP calls plus websocket subscriptions."""

    def __init__(
        self,
        rpc_url: str,
        ws_url: Optional[str] = None,
        commitment: Commitment = Confirmed,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        client: Optional[AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.ws_url = ws_url or http_to_ws(rpc_url)
        self.commitment = commitment
        self.client = client or AsyncClient(rpc_url, commitment=commitment, timeout=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_settings(cls, settings) -> "LedgerClient":
        """Build a client from ``SolanaRPCSettings``."""
        return cls(
            rpc_url=settings.http_endpoint,
            ws_url=settings.ws_endpoint,
            commitment=Commitment(settings.commitment),
            timeout=settings.timeout,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        await self.client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def get_latest_blockhash(self, commitment: Optional[str] = None) -> BlockhashInfo:
        response = await self.client.get_latest_blockhash(
            commitment=Commitment(commitment or self.commitment)
        )
        return BlockhashInfo(
            blockhash=response.value.blockhash,
            last_valid_block_height=response.value.last_valid_block_height,
        )

    async def get_block_height(self, commitment: Optional[str] = None) -> int:
        response = await self.client.get_block_height(Commitment(commitment or self.commitment))
        return response.value

    async def get_balance(self, pubkey: Pubkey, commitment: Optional[str] = None) -> int:
        response = await self.client.get_balance(pubkey, commitment=Commitment(commitment or self.commitment))
        return response.value

    async def simulate(
        self,
        tx: VersionedTransaction,
        commitment: Optional[str] = None,
    ) -> SimulationResult:
        response = await self.client.simulate_transaction(
            tx,
            sig_verify=False,
            commitment=Commitment(commitment or self.commitment),
        )

        if not response.value:
            return SimulationResult(
                success=False,
                logs=[],
                units_consumed=None,
                error="Empty simulation response",
            )

        result = response.value
        return SimulationResult(
            success=result.err is None,
            logs=list(result.logs or []),
            units_consumed=result.units_consumed,
            error=format_transaction_error(result.err),
        )

    async def send_raw_transaction(self, payload: bytes) -> Signature:
        """Send once. Preflight and node-side rebroadcast are both disabled."""
        opts = TxOpts(skip_preflight=True, skip_confirmation=True, max_retries=0)
        response = await self.client.send_raw_transaction(payload, opts=opts)
        return response.value

    async def get_signature_statuses(
        self,
        signatures: Sequence[Signature],
        search_history: bool = False,
    ) -> List[Optional[SignatureStatus]]:
        response = await self.client.get_signature_statuses(
            list(signatures),
            search_transaction_history=search_history,
        )
        statuses: List[Optional[SignatureStatus]] = []
        for status in response.value:
            if status is None:
                statuses.append(None)
                continue
            statuses.append(SignatureStatus(
                slot=status.slot,
                confirmations=status.confirmations,
                err=format_transaction_error(status.err),
                confirmation_status=normalize_commitment(status.confirmation_status),
            ))
        return statuses

    async def get_signature_status(
        self,
        signature: Signature,
        search_history: bool = False,
    ) -> Optional[SignatureStatus]:
        statuses = await self.get_signature_statuses([signature], search_history)
        return statuses[0] if statuses else None

    @asynccontextmanager
    async def subscribe_signature(
        self,
        signature: Signature,
        commitment: str,
    ) -> AsyncIterator[SignatureSubscription]:
        session = await self._get_session()
        async with SignatureSubscription(session, self.ws_url, signature, commitment) as subscription:
            yield subscription

    async def confirm_transaction(
        self,
        signature: Signature,
        last_valid_block_height: int,
        commitment: Optional[str] = None,
        poll_interval: float = 2.0,
    ) -> SignatureStatus:
        """
        Wait until ``signature`` reaches ``commitment`` or its blockhash expires.

        Returns the final status (which may carry ``err``); raises
        ConfirmationTimeoutError once the chain is past
        ``last_valid_block_height`` without the signature having landed.
        """
        target = commitment or self.commitment
        while True:
            status = await self.get_signature_status(signature)
            if status is not None and (status.failed or status.reached(target)):
                return status

            height = await self.get_block_height(target)
            if height > last_valid_block_height:
                raise ConfirmationTimeoutError(
                    message="Block height exceeded before confirmation",
                    signature=str(signature),
                    context={
                        "block_height": height,
                        "last_valid_block_height": last_valid_block_height,
                    },
                )
            await asyncio.sleep(poll_interval)


__all__ = [
    "COMMITMENT_RANK",
    "BlockhashInfo",
    "SignatureStatus",
    "SimulationResult",
    "SignatureSubscription",
    "LedgerClient",
    "normalize_commitment",
    "format_transaction_error",
]
