"""
Batch token burner.

Burns the same amount of one mint from every wallet in a wallets file, one
engine submission per wallet, then gives the failures a few more rounds
with a growing pause before each round. Results are written as JSON;
private keys never leave memory.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .config import BatchSettings
from .engine import SubmissionEngine, SubmitOptions
from .exceptions import ConfigurationError, InvalidRequestError
from .instructions import keypair_from_base58, token_burn
from .retry import ExponentialBackoff, RetryConfig, calculate_delay

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class WalletEntry:
    public_key: str
    private_key: str = field(repr=False)


def load_wallets(path: Union[str, Path]) -> List[WalletEntry]:
    """Read ``{"wallets": [{"publicKey": ..., "privateKey": ...}]}``."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(
            message=f"Wallets file not found: {path}",
            context={"path": str(path)},
        ) from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            message=f"Failed to parse wallets file: {e}",
            context={"path": str(path)},
        ) from e

    wallets = data.get("wallets") if isinstance(data, dict) else None
    if not isinstance(wallets, list):
        raise ConfigurationError(message="Invalid wallet data format: missing wallets array")
    if not wallets:
        raise ConfigurationError(message="No wallets found in the file")

    entries = []
    for index, item in enumerate(wallets):
        if not isinstance(item, dict) or not item.get("publicKey") or not item.get("privateKey"):
            raise ConfigurationError(
                message=f"Wallet #{index + 1} needs both publicKey and privateKey",
            )
        entries.append(WalletEntry(public_key=item["publicKey"], private_key=item["privateKey"]))
    return entries


@dataclass
class BurnRecord:
    wallet: str
    status: str
    signature: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 0
    retry_round: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class BatchReport:
    mint: str
    amount: int
    decimals: int
    total_wallets: int = 0
    records: List[BurnRecord] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def final_records(self) -> Dict[str, BurnRecord]:
        """Latest record per wallet."""
        latest: Dict[str, BurnRecord] = {}
        for record in self.records:
            latest[record.wallet] = record
        return latest

    @property
    def successful(self) -> int:
        return sum(1 for r in self.final_records().values() if r.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.final_records().values() if not r.succeeded)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mint": self.mint,
            "amount": self.amount,
            "decimals": self.decimals,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "summary": {
                "total": self.total_wallets,
                "successful": self.successful,
                "failed": self.failed,
            },
            "transactions": [r.to_dict() for r in self.records],
        }

    def save(self, results_dir: Union[str, Path]) -> Path:
        directory = Path(results_dir)
        directory.mkdir(parents=True, exist_ok=True)
        stamp = (self.finished_at or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%S%fZ")
        path = directory / f"burn_results_{stamp}.json"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Results saved to {path}")
        return path


class BatchRunner:
    """Runs one burn per wallet through a shared engine."""

    def __init__(
        self,
        engine: SubmissionEngine,
        settings: Optional[BatchSettings] = None,
        options: Optional[SubmitOptions] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.settings = settings or BatchSettings()
        self.options = options
        self._sleep = sleep
        self._round_backoff = RetryConfig(
            base_delay=self.settings.wallet_retry_delay,
            max_delay=self.settings.wallet_retry_delay
            * self.settings.wallet_retry_backoff ** max(self.settings.wallet_retry_rounds - 1, 0),
            growth=self.settings.wallet_retry_backoff,
        )

    def round_delay(self, retry_round: int) -> float:
        return calculate_delay(retry_round, self._round_backoff, ExponentialBackoff())

    async def run(
        self,
        mint: str,
        amount: int,
        decimals: int,
        wallets: List[WalletEntry],
    ) -> BatchReport:
        report = BatchReport(mint=mint, amount=amount, decimals=decimals, total_wallets=len(wallets))
        logger.info(f"Starting batch burn of {amount} base units of {mint} across {len(wallets)} wallets")

        failures = await self._run_round(wallets, mint, amount, decimals, report, retry_round=0)
        logger.info(
            f"Initial pass done: {len(wallets) - len(failures)} succeeded, {len(failures)} failed"
        )

        for retry_round in range(1, self.settings.wallet_retry_rounds + 1):
            if not failures:
                break
            delay = self.round_delay(retry_round)
            logger.info(
                f"Retry round {retry_round}/{self.settings.wallet_retry_rounds} "
                f"for {len(failures)} wallet(s) in {delay:.1f}s"
            )
            await self._sleep(delay)
            failures = await self._run_round(failures, mint, amount, decimals, report, retry_round)

        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Batch burn finished: {report.successful} successful, {report.failed} failed "
            f"of {report.total_wallets}"
        )
        return report

    async def _run_round(
        self,
        wallets: List[WalletEntry],
        mint: str,
        amount: int,
        decimals: int,
        report: BatchReport,
        retry_round: int,
    ) -> List[WalletEntry]:
        """Burn for each wallet; return those worth another round."""
        retryable: List[WalletEntry] = []
        for index, wallet in enumerate(wallets):
            logger.info(f"[{index + 1}/{len(wallets)}] Processing wallet: {wallet.public_key}")
            record, retry = await self.burn_one(wallet, mint, amount, decimals)
            record.retry_round = retry_round
            report.records.append(record)
            if retry:
                retryable.append(wallet)

            if index < len(wallets) - 1:
                await self._sleep(self.settings.delay_between_calls)
        return retryable

    async def burn_one(
        self,
        wallet: WalletEntry,
        mint: str,
        amount: int,
        decimals: int,
    ) -> Tuple[BurnRecord, bool]:
        """Submit one burn. Returns the record and whether a later round may help."""
        try:
            signer = keypair_from_base58(wallet.private_key, wallet.public_key)
            instructions = token_burn(signer.pubkey(), mint, amount, decimals)
            result = await self.engine.submit(instructions, signer, self.options)
        except InvalidRequestError as e:
            logger.error(f"Rejected burn for {wallet.public_key}: {e.message}")
            return BurnRecord(
                wallet=wallet.public_key,
                status=STATUS_FAILED,
                error=e.message,
                error_code=e.error_code,
            ), False

        if result.success:
            logger.info(f"Success for {wallet.public_key}: {result.signature}")
            return BurnRecord(
                wallet=wallet.public_key,
                status=STATUS_SUCCESS,
                signature=str(result.signature),
                attempts=len(result.attempts),
            ), False

        logger.error(f"Failed for {wallet.public_key}: {result.error.message}")
        return BurnRecord(
            wallet=wallet.public_key,
            status=STATUS_FAILED,
            error=result.error.message,
            error_code=result.error.error_code,
            attempts=len(result.attempts),
        ), True


__all__ = [
    "WalletEntry",
    "BurnRecord",
    "BatchReport",
    "BatchRunner",
    "load_wallets",
]
