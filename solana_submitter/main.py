import argparse
import asyncio
import json
import logging
import sys
import traceback
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from .batch import BatchRunner, load_wallets
from .config import LoggingSettings, Settings, load_settings
from .engine import SubmissionEngine, SubmitOptions
from .exceptions import ConfigurationError, InvalidRequestError, SubmitterError
from .instructions import (
    LAMPORTS_PER_SOL,
    keypair_from_base58,
    sol_transfer,
    to_pubkey,
    token_transfer,
    ui_to_base_units,
)
from .ledger import LedgerClient

logger = logging.getLogger("solana_submitter")


class ApplicationLogger:
    def __init__(self, settings: LoggingSettings):
        self.settings = settings
        self.logger = None

    def setup(self) -> logging.Logger:
        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, self.settings.level.value))

        root_logger.handlers.clear()

        formatter = logging.Formatter(self.settings.format, datefmt=self.settings.date_format)

        if self.settings.file_enabled:
            self.settings.file_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                self.settings.file_path,
                maxBytes=self.settings.file_max_bytes,
                backupCount=self.settings.file_backup_count,
                encoding="utf-8"
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(logging.DEBUG)
            root_logger.addHandler(file_handler)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("aiohttp").setLevel(logging.WARNING)
        logging.getLogger("asyncio").setLevel(logging.WARNING)

        self.logger = logging.getLogger("solana_submitter")
        return self.logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="solana-submitter",
        description="Submit Solana transactions with fee escalation and confirmation tracking",
    )
    parser.add_argument("--max-attempts", type=int, help="Override SUBMIT_MAX_ATTEMPTS")
    parser.add_argument("--priority-fee", type=int, help="Initial priority fee in micro-lamports")
    parser.add_argument("--no-simulate", action="store_true", help="Skip the dry-run before sending")

    sub = parser.add_subparsers(dest="command", required=True)

    burn = sub.add_parser("burn", help="Burn a token amount from every wallet in a wallets file")
    burn.add_argument("--mint", required=True, help="Token mint address")
    burn.add_argument("--amount", required=True, help="Amount per wallet, in token units")
    burn.add_argument("--decimals", required=True, type=int, help="Token decimals")
    burn.add_argument("--wallets", help="Wallets JSON file (defaults to BATCH_WALLETS_FILE)")
    burn.add_argument("--results-dir", help="Where to write burn_results_<timestamp>.json")

    transfer = sub.add_parser("transfer", help="Send SOL or a token from the WALLET_PRIVATE_KEY wallet")
    transfer.add_argument("--to", required=True, help="Recipient wallet address")
    asset = transfer.add_mutually_exclusive_group(required=True)
    asset.add_argument("--lamports", type=int, help="SOL amount in lamports")
    asset.add_argument("--mint", help="Token mint address; sends --amount of that token")
    transfer.add_argument("--amount", help="Token amount, in token units (with --mint)")
    transfer.add_argument("--decimals", type=int, help="Token decimals (with --mint)")
    transfer.add_argument(
        "--create-account",
        action="store_true",
        help="Create the recipient's associated token account first (with --mint)",
    )

    balance = sub.add_parser("balance", help="Show the SOL balance of an address")
    balance.add_argument("--address", required=True, help="Wallet address")

    sub.add_parser("settings", help="Print the loaded settings with secrets masked")

    return parser


def submit_options(settings: Settings, args: argparse.Namespace) -> SubmitOptions:
    options = SubmitOptions.from_settings(settings.submission, settings.solana.commitment)
    if args.max_attempts is not None:
        options = replace(options, max_attempts=args.max_attempts)
    if args.priority_fee is not None:
        ceiling = options.priority_fee_ceiling
        if ceiling is not None and ceiling < args.priority_fee:
            ceiling = args.priority_fee
        options = replace(options, initial_priority_fee=args.priority_fee, priority_fee_ceiling=ceiling)
    if args.no_simulate:
        options = replace(options, simulate=False)
    return options


async def cmd_burn(args, settings: Settings, ledger: LedgerClient, options: SubmitOptions) -> int:
    amount = ui_to_base_units(args.amount, args.decimals)
    wallets = load_wallets(args.wallets or settings.batch.wallets_file)
    logger.info(f"Found {len(wallets)} wallets to process")

    engine = SubmissionEngine(ledger, options)
    runner = BatchRunner(engine, settings.batch, options)
    report = await runner.run(args.mint, amount, args.decimals, wallets)
    report.save(args.results_dir or settings.batch.results_dir)

    print(f"Total wallets processed: {report.total_wallets}")
    print(f"Successful burns: {report.successful}")
    print(f"Failed burns: {report.failed}")
    return 0 if report.failed == 0 else 1


async def cmd_transfer(args, settings: Settings, ledger: LedgerClient, options: SubmitOptions) -> int:
    if settings.wallet.private_key is None:
        raise ConfigurationError(message="WALLET_PRIVATE_KEY is not set")
    signer = keypair_from_base58(
        settings.wallet.private_key.get_secret_value(),
        settings.wallet.public_key,
    )
    recipient = to_pubkey(args.to, "recipient")

    if args.mint is not None:
        if args.amount is None or args.decimals is None:
            raise InvalidRequestError(message="--mint requires --amount and --decimals")
        instructions = token_transfer(
            signer.pubkey(),
            recipient,
            args.mint,
            ui_to_base_units(args.amount, args.decimals),
            args.decimals,
            create_recipient_account=args.create_account,
        )
    else:
        balance = await ledger.get_balance(signer.pubkey())
        logger.info(f"Balance for wallet {signer.pubkey()}: {balance / LAMPORTS_PER_SOL} SOL")
        if balance < args.lamports:
            raise InvalidRequestError(
                message=f"Insufficient balance: {balance} lamports available, {args.lamports} requested",
            )
        instructions = sol_transfer(signer.pubkey(), recipient, args.lamports)

    engine = SubmissionEngine(ledger, options)
    result = await engine.submit(instructions, signer)
    if not result.success:
        print(f"Transfer failed: {result.error.message}")
        return 1

    print(f"Transaction: {result.signature}")
    return 0


async def cmd_balance(args, settings: Settings, ledger: LedgerClient, options: SubmitOptions) -> int:
    lamports = await ledger.get_balance(to_pubkey(args.address))
    print(f"{args.address}: {lamports / LAMPORTS_PER_SOL} SOL ({lamports} lamports)")
    return 0


COMMANDS = {
    "burn": cmd_burn,
    "transfer": cmd_transfer,
    "balance": cmd_balance,
}


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.command == "settings":
        print(json.dumps(settings.mask_secrets(), indent=2, default=str))
        return 0

    ApplicationLogger(settings.logging).setup()
    logger.info(f"Network: {settings.solana.network.value}")
    logger.info(f"RPC URL: {settings.solana.http_endpoint[:50]}")

    try:
        options = submit_options(settings, args)
        options.validate()
        async with LedgerClient.from_settings(settings.solana) as ledger:
            return await COMMANDS[args.command](args, settings, ledger, options)
    except SubmitterError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


def run() -> None:
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)

    except KeyboardInterrupt:
        print("\nShutdown requested...")
        sys.exit(0)
    except Exception as e:
        print(f"Fatal error: {e}")
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    run()
