"""paygate command line interface.

Provides operational tools for:
- Schema creation
- Credential verification against the processor
- Replaying a captured processor callback
- Listing payments whose callback never arrived
- The invoice overdue sweep
- Generating a credential encryption key

Usage:
    paygate init-db
    paygate verify-credentials --business-id biz_1 --method mobile_money
    paygate replay-callback --method mobile_money --file callback.json
    paygate replay-callback --method card --business-id biz_1 --file event.json --signature "t=...,v1=..."
    paygate stale-pending --older-than-minutes 30
    paygate mark-overdue --as-of 2026-01-31
    paygate generate-key
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import date
from pathlib import Path
from typing import Any

from paygate.config import Settings, get_settings
from paygate.credentials.cipher import SecretCipher
from paygate.errors import GatewayError
from paygate.gateway import Gateway
from paygate.gateway_config import GatewayConfig
from paygate.models.business import PaymentMethod

logger = logging.getLogger(__name__)


def parse_date(s: str) -> date:
    """Parse ISO date string."""
    return date.fromisoformat(s)


class GatewayCli:
    """paygate command line interface."""

    def __init__(
        self,
        settings: Settings | None = None,
        gateway_factory: Callable[[GatewayConfig], Gateway] = Gateway,
    ) -> None:
        self._settings = settings
        self.gateway_factory = gateway_factory
        self.parser = self._build_parser()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="paygate",
            description="Payment gateway operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create database tables")

        verify = subparsers.add_parser(
            "verify-credentials",
            help="Check stored processor credentials against the processor",
        )
        verify.add_argument("--business-id", required=True, help="Business to check")
        verify.add_argument(
            "--method",
            required=True,
            choices=[m.value for m in PaymentMethod],
            help="Payment method whose credentials to check",
        )

        replay = subparsers.add_parser(
            "replay-callback",
            help="Apply a captured processor callback",
        )
        replay.add_argument(
            "--method",
            required=True,
            choices=[PaymentMethod.MOBILE_MONEY.value, PaymentMethod.CARD.value],
            help="Processor that sent the callback",
        )
        replay.add_argument(
            "--file",
            type=Path,
            required=True,
            help="File holding the raw callback body",
        )
        replay.add_argument("--signature", help="Signature header sent with the callback")
        replay.add_argument(
            "--business-id",
            help="Business the webhook was addressed to (required for card)",
        )

        stale = subparsers.add_parser(
            "stale-pending",
            help="List pending/processing payments whose callback never arrived",
        )
        stale.add_argument(
            "--older-than-minutes",
            type=int,
            help="Age threshold (default: STALE_PENDING_MINUTES)",
        )
        stale.add_argument(
            "--limit",
            type=int,
            default=100,
            help="Maximum entries to list (default: 100)",
        )
        stale.add_argument("--json", action="store_true", help="Output JSON lines")

        overdue = subparsers.add_parser(
            "mark-overdue",
            help="Move unpaid invoices past their due date to overdue",
        )
        overdue.add_argument(
            "--as-of",
            type=parse_date,
            help="Reference date (default: today, UTC)",
        )

        subparsers.add_parser("generate-key", help="Print a new credential encryption key")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        if parsed.command == "generate-key":
            return self._cmd_generate_key(parsed)

        handlers: dict[str, Callable[[Gateway, argparse.Namespace], Awaitable[int]]] = {
            "init-db": self._cmd_init_db,
            "verify-credentials": self._cmd_verify_credentials,
            "replay-callback": self._cmd_replay_callback,
            "stale-pending": self._cmd_stale_pending,
            "mark-overdue": self._cmd_mark_overdue,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        logging.basicConfig(
            level=self.settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        try:
            config = GatewayConfig.from_settings(self.settings)
        except ValueError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            return 2
        return asyncio.run(self._with_gateway(config, handler, parsed))

    async def _with_gateway(
        self,
        config: GatewayConfig,
        handler: Callable[[Gateway, argparse.Namespace], Awaitable[int]],
        args: argparse.Namespace,
    ) -> int:
        gateway = self.gateway_factory(config)
        try:
            await gateway.connect()
            return await handler(gateway, args)
        except GatewayError as e:
            print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
            return 1
        finally:
            await gateway.close()

    async def _cmd_init_db(self, gateway: Gateway, args: argparse.Namespace) -> int:
        """Create all tables."""
        await gateway.create_schema()
        print("Schema created.")
        return 0

    async def _cmd_verify_credentials(self, gateway: Gateway, args: argparse.Namespace) -> int:
        """Verify stored credentials."""
        result = await gateway.registry.verify_credentials(args.business_id, args.method)
        status = "OK" if result.success else "FAIL"
        print(f"{args.business_id} {args.method}: {status} - {result.message}")
        return 0 if result.success else 1

    async def _cmd_replay_callback(self, gateway: Gateway, args: argparse.Namespace) -> int:
        """Feed a captured callback body through the reconciler."""
        payload = args.file.read_bytes()
        if args.method == PaymentMethod.CARD.value:
            if not args.business_id:
                print("--business-id is required for card webhooks", file=sys.stderr)
                return 1
            result = await gateway.callbacks.handle_card_webhook(
                args.business_id, payload, args.signature
            )
        else:
            result = await gateway.callbacks.handle_mobile_money_callback(
                payload, args.signature
            )

        print(f"Callback {result.status.value}")
        if result.transaction_id:
            print(f"  Transaction: {result.transaction_id} ({result.transaction_status})")
        if result.correlation_id:
            print(f"  Correlation ID: {result.correlation_id}")
        return 0

    async def _cmd_stale_pending(self, gateway: Gateway, args: argparse.Namespace) -> int:
        """List stale pending entries."""
        entries = await gateway.stale_pending(args.older_than_minutes, limit=args.limit)
        if args.json:
            for entry in entries:
                print(json.dumps(_summary(entry), default=str))
            return 0

        minutes = args.older_than_minutes or gateway.config.stale_pending_minutes
        print(f"Stale pending payments (older than {minutes} min): {len(entries)}")
        for entry in entries:
            print(
                f"  {entry.id} | {entry.business_id} | {entry.method} | "
                f"{entry.amount} {entry.currency} | {entry.status} | "
                f"{entry.correlation_id or '-'} | {entry.created_at.isoformat()}"
            )
        return 0

    async def _cmd_mark_overdue(self, gateway: Gateway, args: argparse.Namespace) -> int:
        """Run the overdue sweep."""
        invoices = await gateway.invoices.mark_overdue(args.as_of)
        print(f"Marked {len(invoices)} invoice(s) overdue.")
        for invoice in invoices:
            print(f"  {invoice.invoice_number} | {invoice.business_id} | due {invoice.due_date}")
        return 0

    def _cmd_generate_key(self, args: argparse.Namespace) -> int:
        """Print a fresh Fernet key for ENCRYPTION_KEY."""
        print(SecretCipher.generate_key())
        return 0


def _summary(entry: Any) -> dict[str, Any]:
    return {
        "id": entry.id,
        "business_id": entry.business_id,
        "method": entry.method,
        "amount": entry.amount,
        "currency": entry.currency,
        "status": entry.status,
        "correlation_id": entry.correlation_id,
        "merchant_request_id": entry.merchant_request_id,
        "created_at": entry.created_at,
    }


def main() -> int:
    """CLI entry point."""
    cli = GatewayCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
