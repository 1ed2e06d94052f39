"""Command line interface.

Usage:
    usdc-payroll serve
    usdc-payroll init-db
    usdc-payroll reprovision --limit 50
    usdc-payroll settle-transfer TRANSFER_ID
    usdc-payroll execute-run RUN_ID
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID

from usdc_payroll import __version__
from usdc_payroll.config import Settings, get_settings
from usdc_payroll.database import Database
from usdc_payroll.errors import PayrollError
from usdc_payroll.logging_config import configure_logging
from usdc_payroll.providers import build_gateway_clients
from usdc_payroll.services import Services, build_services


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    try:
        return UUID(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a valid id: {s}") from None


@asynccontextmanager
async def open_services(settings: Settings) -> AsyncIterator[Services]:
    """Services backed by a freshly opened database, closed on exit."""
    db = Database(settings.database_url, echo=settings.debug)
    db.open()
    gateway = build_gateway_clients(settings)
    services = build_services(settings, db, gateway)
    try:
        yield services
    finally:
        await services.supervisor.shutdown()
        await gateway.aclose()
        await db.close()


class PayrollCli:
    """Operational commands for the payroll service."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self.parser = self._build_parser()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def _build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="usdc-payroll",
            description="USDC payroll operational tools",
        )
        parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("serve", help="Run the HTTP API")
        subparsers.add_parser("init-db", help="Create any missing database tables")

        reprovision = subparsers.add_parser(
            "reprovision",
            help="Retry recipient/wallet provisioning for incomplete workers",
        )
        reprovision.add_argument(
            "--limit",
            type=int,
            default=100,
            help="Maximum number of workers to process (default: 100)",
        )

        settle = subparsers.add_parser(
            "settle-transfer",
            help="Wait for a transfer's attestation, then mint on the destination chain",
        )
        settle.add_argument("transfer_id", type=parse_uuid)

        execute = subparsers.add_parser(
            "execute-run",
            help="Execute a PENDING payroll run in the foreground",
        )
        execute.add_argument("run_id", type=parse_uuid)

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        configure_logging(self.settings.log_level)

        if parsed.command == "serve":
            return self._cmd_serve(parsed)

        handlers: dict[str, Callable[[Services, argparse.Namespace], Awaitable[int]]] = {
            "init-db": self._cmd_init_db,
            "reprovision": self._cmd_reprovision,
            "settle-transfer": self._cmd_settle_transfer,
            "execute-run": self._cmd_execute_run,
        }
        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        async def invoke() -> int:
            async with open_services(self.settings) as services:
                return await handler(services, parsed)

        try:
            return asyncio.run(invoke())
        except PayrollError as exc:
            print(f"ERROR [{exc.code}]: {exc.message}", file=sys.stderr)
            return 1

    def _cmd_serve(self, args: argparse.Namespace) -> int:
        from usdc_payroll.__main__ import main as serve

        serve()
        return 0

    async def _cmd_init_db(self, services: Services, args: argparse.Namespace) -> int:
        await services.db.create_all()
        print("Database tables created.")
        return 0

    async def _cmd_reprovision(self, services: Services, args: argparse.Namespace) -> int:
        results = await services.provisioning.reprovision_missing(limit=args.limit)
        if not results:
            print("All workers are provisioned.")
            return 0
        for result in results:
            state = "ok" if result.success else "; ".join(result.errors)
            print(f"  {result.worker_id}: {state}")
        incomplete = sum(1 for r in results if not r.success)
        print(f"\nProcessed {len(results)} worker(s), {incomplete} still incomplete.")
        return 1 if incomplete else 0

    async def _cmd_settle_transfer(self, services: Services, args: argparse.Namespace) -> int:
        transfer = await services.transfers.settle_transfer(args.transfer_id)
        print(f"Transfer {transfer.id}: {transfer.status}")
        if transfer.mint_transaction_hash:
            print(f"  Mint transaction: {transfer.mint_transaction_hash}")
        if transfer.error_message:
            print(f"  Error: {transfer.error_message}")
        return 0 if transfer.status == "COMPLETED" else 1

    async def _cmd_execute_run(self, services: Services, args: argparse.Namespace) -> int:
        summary = await services.payroll.execute_run(args.run_id)
        # Wait for sponsored payments to settle before reporting
        await services.supervisor.join()
        print(f"Payroll run {summary.run_id}: {summary.status}")
        print(f"  Dispatched: {summary.dispatched}")
        print(f"  Failed:     {summary.failed}")
        for item_id, message in summary.errors.items():
            print(f"    - {item_id}: {message}")
        return 0 if summary.status == "COMPLETED" else 1


def main() -> int:
    """CLI entry point."""
    cli = PayrollCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
