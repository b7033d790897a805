"""Retainer billing command line interface.

Provides operational tools for:
- Rollover balance projection (no database)
- Invoice generation for one period or every month of an agreement
- Time entry fragment recombination
- Invoice history listing

Usage:
    python -m retainer_billing balances --retainer-hours 10 --rollover-months 3 6 14 9
    python -m retainer_billing generate --company-id 1 --start 2024-01-01 --end 2024-01-31
    python -m retainer_billing generate-all --company-id 1 --through 2024-06-30
    python -m retainer_billing recombine --company-id 1
    python -m retainer_billing history --company-id 1
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from contextlib import AbstractAsyncContextManager
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from retainer_billing.calculators.rollover import BalanceCalculator
from retainer_billing.calculators.types import MonthInput
from retainer_billing.config import configure_logging
from retainer_billing.database import get_session
from retainer_billing.errors import BillingError
from retainer_billing.services.invoice_service import InvoiceOrchestrator, add_months
from retainer_billing.services.reconciler import FragmentReconciler

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def parse_date(s: str) -> date:
    """Parse ISO date string."""
    return date.fromisoformat(s)


def parse_month(s: str) -> date:
    """Parse YYYY-MM into the first day of that month."""
    try:
        year, month = s.split("-")
        return date(int(year), int(month), 1)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid month '{s}', expected YYYY-MM") from e


def parse_hours(s: str) -> Decimal:
    """Parse a non-negative decimal hour amount."""
    try:
        value = Decimal(s)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"Invalid hours '{s}'") from e
    if value < 0:
        raise argparse.ArgumentTypeError(f"Hours must not be negative: {s}")
    return value


class RetainerBillingCli:
    """Retainer billing command line interface."""

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self.parser = self._build_parser()
        self.session_factory = session_factory or get_session

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m retainer_billing",
            description="Retainer billing tools",
        )
        parser.add_argument(
            "--log-level",
            type=str,
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Logging level (default: $LOG_LEVEL or INFO)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # balances command
        balances = subparsers.add_parser(
            "balances",
            help="Project rollover balances across consecutive months",
        )
        balances.add_argument(
            "--retainer-hours",
            type=parse_hours,
            required=True,
            help="Monthly retainer hours",
        )
        balances.add_argument(
            "--rollover-months",
            type=int,
            default=0,
            help="Months unused hours remain usable (default: 0)",
        )
        balances.add_argument(
            "--start-month",
            type=parse_month,
            help="Label the first month (YYYY-MM); later months follow consecutively",
        )
        balances.add_argument(
            "--bill-excess",
            action="store_true",
            help="Bill hours beyond availability instead of carrying a negative balance",
        )
        balances.add_argument(
            "hours_worked",
            type=parse_hours,
            nargs="+",
            help="Hours worked in each month, oldest first",
        )

        # generate command
        generate = subparsers.add_parser(
            "generate",
            help="Generate or regenerate the invoice for one period",
        )
        generate.add_argument("--company-id", type=int, required=True, help="Client company ID")
        generate.add_argument("--start", type=parse_date, required=True, help="Period start (YYYY-MM-DD)")
        generate.add_argument("--end", type=parse_date, required=True, help="Period end (YYYY-MM-DD)")

        # generate-all command
        generate_all = subparsers.add_parser(
            "generate-all",
            help="Generate invoices for every month of the active agreement",
        )
        generate_all.add_argument("--company-id", type=int, required=True, help="Client company ID")
        generate_all.add_argument(
            "--through",
            type=parse_date,
            help="Last date to cover (default: today)",
        )

        # recombine command
        recombine = subparsers.add_parser(
            "recombine",
            help="Merge unlinked time entry fragments",
        )
        recombine.add_argument("--company-id", type=int, required=True, help="Client company ID")

        # history command
        history = subparsers.add_parser(
            "history",
            help="List every invoice of a company, newest first",
        )
        history.add_argument("--company-id", type=int, required=True, help="Client company ID")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        configure_logging(parsed.log_level)

        handlers: dict[str, Callable[[argparse.Namespace], int]] = {
            "balances": self._cmd_balances,
            "generate": self._cmd_generate,
            "generate-all": self._cmd_generate_all,
            "recombine": self._cmd_recombine,
            "history": self._cmd_history,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        try:
            return handler(parsed)
        except (BillingError, ValueError) as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1

    def _cmd_balances(self, args: argparse.Namespace) -> int:
        """Print a month-by-month balance projection."""
        months = []
        for index, hours in enumerate(args.hours_worked):
            if args.start_month:
                key = add_months(args.start_month, index).strftime("%Y-%m")
            else:
                key = f"M{index + 1}"
            months.append(MonthInput(period_key=key, retainer_hours=args.retainer_hours, hours_worked=hours))

        calculator = BalanceCalculator()
        summaries = calculator.calculate_multiple_months(
            months, args.rollover_months, bill_excess_immediately=args.bill_excess
        )

        header = f"{'Period':<8} {'Worked':>8} {'Avail':>8} {'Rollover':>8} {'Unused':>8} {'Negative':>8} {'Excess':>8}  Status"
        print(header)
        print("-" * len(header))
        for summary in summaries:
            print(
                f"{summary.period_key:<8} "
                f"{summary.hours_worked:>8.2f} "
                f"{summary.opening.total_available:>8.2f} "
                f"{summary.closing.hours_used_from_rollover:>8.2f} "
                f"{summary.closing.unused_hours:>8.2f} "
                f"{summary.closing.negative_balance:>8.2f} "
                f"{summary.closing.excess_hours:>8.2f}  "
                f"{calculator.status_description(summary)}"
            )
        return 0

    def _cmd_generate(self, args: argparse.Namespace) -> int:
        """Generate one period's invoice."""

        async def work(session: AsyncSession) -> dict[str, Any]:
            orchestrator = InvoiceOrchestrator(session)
            invoice = await orchestrator.generate_for_period(args.company_id, args.start, args.end)
            return {
                "invoice_number": invoice.invoice_number,
                "hours_worked": invoice.hours_worked,
                "hours_billed_at_rate": invoice.hours_billed_at_rate,
                "invoice_total": invoice.invoice_total,
            }

        result = asyncio.run(self._in_session(work))
        print(f"Invoice {result['invoice_number']} ({args.start} - {args.end})")
        print(f"  Hours worked:         {result['hours_worked']}")
        print(f"  Hours billed at rate: {result['hours_billed_at_rate']}")
        print(f"  Total:                {result['invoice_total']}")
        return 0

    def _cmd_generate_all(self, args: argparse.Namespace) -> int:
        """Generate every monthly invoice of the active agreement."""

        async def work(session: AsyncSession):
            orchestrator = InvoiceOrchestrator(session)
            return await orchestrator.generate_all_monthly_invoices(args.company_id, args.through)

        result = asyncio.run(self._in_session(work))
        for entry in result.generated:
            print(f"  generated {entry['period']}: {entry['invoice_number']}")
        for entry in result.updated:
            print(f"  updated   {entry['period']}: {entry['invoice_number']}")
        for entry in result.skipped:
            print(f"  skipped   {entry['period']}: {entry.get('reason') or entry.get('error')}")
        summary = result.summary
        print(
            f"Generated {summary['generated_count']}, updated {summary['updated_count']}, "
            f"skipped {summary['skipped_count']}"
        )
        return 0

    def _cmd_recombine(self, args: argparse.Namespace) -> int:
        """Merge unlinked fragments for a company."""

        async def work(session: AsyncSession) -> int:
            return await FragmentReconciler(session).recombine_unlinked_fragments(args.company_id)

        eliminated = asyncio.run(self._in_session(work))
        print(f"Recombined {eliminated} fragment(s) for client company {args.company_id}")
        return 0

    def _cmd_history(self, args: argparse.Namespace) -> int:
        """Print a company's invoices, newest first."""

        async def work(session: AsyncSession) -> list[dict[str, Any]]:
            return await InvoiceOrchestrator(session).invoice_history(args.company_id)

        history = asyncio.run(self._in_session(work))
        if not history:
            print(f"No invoices for client company {args.company_id}")
            return 0

        header = f"{'Invoice':<18} {'Period':<23} {'Status':<7} {'Worked':>8} {'Billed':>8} {'Total':>10}"
        print(header)
        print("-" * len(header))
        for entry in history:
            period = f"{entry['period_start']} - {entry['period_end']}"
            print(
                f"{entry['invoice_number']:<18} "
                f"{period:<23} "
                f"{entry['status']:<7} "
                f"{entry['hours_worked']:>8.2f} "
                f"{entry['hours_billed_at_rate']:>8.2f} "
                f"{entry['invoice_total']:>10.2f}"
            )
        return 0

    async def _in_session(self, work: Callable[[AsyncSession], Any]) -> Any:
        async with self.session_factory() as session:
            return await work(session)


def main() -> int:
    """CLI entry point."""
    cli = RetainerBillingCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
