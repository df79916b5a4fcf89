"""Payroll engine command line interface.

Usage:
    python -m hr_payroll init-db
    python -m hr_payroll calculate --company-id X --period-start 2024-03-01 --period-end 2024-03-31 [--persist]
    python -m hr_payroll validate-country --iso-code ZA [--as-of 2024-03-01]
    python -m hr_payroll preview-statutory --iso-code ZA --gross 25000 [--pay-frequency monthly]
    python -m hr_payroll check-reporting-lines --company-id X
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import select

from hr_payroll import database
from hr_payroll.calculators.engine import PayrollEngine
from hr_payroll.calculators.statutory import StatutoryDeductionCalculator
from hr_payroll.calculators.types import PayFrequency
from hr_payroll.config import get_settings
from hr_payroll.models import Country, Employee
from hr_payroll.services.payroll_service import PayrollService
from hr_payroll.services.reporting_lines import find_cycles, load_manager_map

logger = logging.getLogger(__name__)


def parse_date(s: str) -> date:
    """Parse ISO date string."""
    return date.fromisoformat(s)


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


def parse_amount(s: str) -> Decimal:
    """Parse a non-negative money amount."""
    try:
        amount = Decimal(s)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not an amount: {s!r}") from None
    if not amount.is_finite() or amount < 0:
        raise argparse.ArgumentTypeError(f"not an amount: {s!r}")
    return amount


class PayrollCli:
    """Payroll command line interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m hr_payroll",
            description="Payroll calculation and lifecycle tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create database tables")

        calculate = subparsers.add_parser(
            "calculate",
            help="Calculate payroll for every active employee of a company",
        )
        calculate.add_argument("--company-id", type=parse_uuid, required=True)
        calculate.add_argument("--period-start", type=parse_date, required=True)
        calculate.add_argument("--period-end", type=parse_date, required=True)
        calculate.add_argument(
            "--persist",
            action="store_true",
            help="Store the results as a draft payroll",
        )
        calculate.add_argument(
            "--details",
            action="store_true",
            help="Include per-employee totals in the output",
        )

        validate = subparsers.add_parser(
            "validate-country",
            help="Check a country's mandatory deductions are configured",
        )
        validate.add_argument("--iso-code", type=str, required=True)
        validate.add_argument("--as-of", type=parse_date, default=None)

        preview = subparsers.add_parser(
            "preview-statutory",
            help="Show the statutory deductions a country takes from a gross salary",
        )
        preview.add_argument("--iso-code", type=str, required=True)
        preview.add_argument("--gross", type=parse_amount, required=True)
        preview.add_argument(
            "--pay-frequency",
            choices=[f.value for f in PayFrequency],
            default=PayFrequency.MONTHLY.value,
        )
        preview.add_argument("--as-of", type=parse_date, default=None)

        reporting = subparsers.add_parser(
            "check-reporting-lines",
            help="Report manager assignment cycles for a company",
        )
        reporting.add_argument("--company-id", type=parse_uuid, required=True)

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        handlers: dict[str, Callable[..., Any]] = {
            "init-db": self._cmd_init_db,
            "calculate": self._cmd_calculate,
            "validate-country": self._cmd_validate_country,
            "preview-statutory": self._cmd_preview_statutory,
            "check-reporting-lines": self._cmd_check_reporting_lines,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1
        try:
            return asyncio.run(self._run_command(handler, parsed))
        except Exception as e:
            logger.exception("Command %s failed", parsed.command)
            print(f"Error: {e}", file=sys.stderr)
            return 1

    async def _run_command(self, handler: Callable[..., Any], args: argparse.Namespace) -> int:
        try:
            return await handler(args)
        finally:
            await database.dispose()

    async def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create tables."""
        await database.create_all()
        print("Database tables created.")
        return 0

    async def _cmd_calculate(self, args: argparse.Namespace) -> int:
        """Calculate (and optionally persist) a company payroll."""
        async with database.get_session() as session:
            result = await session.execute(
                select(Employee)
                .where(
                    Employee.company_id == args.company_id,
                    Employee.status == "active",
                )
                .order_by(Employee.employee_number)
            )
            employees = list(result.scalars().all())

            engine = PayrollEngine(session)
            batch = await engine.calculate_batch_payroll(
                employees, args.period_start, args.period_end
            )
            output: dict[str, Any] = {
                "summary": batch.summary.to_dict(),
                "errors": batch.errors,
            }
            if args.details:
                output["calculations"] = [c.to_summary_dict() for c in batch.calculations]

            if args.persist and batch.calculations:
                payroll = await PayrollService(session).create_payroll_records(
                    args.company_id,
                    batch.calculations,
                    args.period_start,
                    args.period_end,
                )
                output["payroll_id"] = str(payroll.payroll_id)

        print(json.dumps(output, indent=2))
        return 0 if batch.summary.failed_calculations == 0 else 2

    async def _cmd_validate_country(self, args: argparse.Namespace) -> int:
        """Validate a country's statutory configuration."""
        async with database.get_session() as session:
            result = await session.execute(
                select(Country).where(Country.iso_code == args.iso_code.upper())
            )
            country = result.scalar_one_or_none()
            if country is None:
                print(f"Unknown country: {args.iso_code}", file=sys.stderr)
                return 1
            report = await StatutoryDeductionCalculator(session).validate_country_configuration(
                country, args.as_of or date.today()
            )

        print(
            json.dumps(
                {
                    "country": report.country_code,
                    "is_valid": report.is_valid,
                    "mandatory_codes": report.mandatory_codes,
                    "configured_codes": report.configured_codes,
                    "missing_codes": report.missing_codes,
                    "errors": report.errors,
                },
                indent=2,
            )
        )
        return 0 if report.is_valid else 2

    async def _cmd_preview_statutory(self, args: argparse.Namespace) -> int:
        """Preview a country's statutory deductions for a gross salary."""
        async with database.get_session() as session:
            result = await StatutoryDeductionCalculator(session).preview(
                args.iso_code,
                args.gross,
                args.as_of or date.today(),
                pay_frequency=args.pay_frequency,
            )

        print(
            json.dumps(
                {
                    "country": args.iso_code.upper(),
                    "gross_salary": str(args.gross),
                    "pay_frequency": args.pay_frequency,
                    "employee_total": str(result.employee_total),
                    "employer_total": str(result.employer_total),
                    "lines": [
                        {
                            "code": line.code,
                            "name": line.name,
                            "category": line.category.value,
                            "employee_amount": str(line.employee_amount),
                            "employer_amount": str(line.employer_amount),
                        }
                        for line in result.items
                    ],
                    "errors": result.errors,
                },
                indent=2,
            )
        )
        return 0 if result.jurisdiction_resolved and not result.errors else 2

    async def _cmd_check_reporting_lines(self, args: argparse.Namespace) -> int:
        """List manager cycles."""
        async with database.get_session() as session:
            manager_map = await load_manager_map(session, args.company_id)

        cycles = find_cycles(manager_map)
        print(json.dumps({"cycles": [[str(e) for e in cycle] for cycle in cycles]}, indent=2))
        return 0 if not cycles else 2


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return PayrollCli().run(argv)


if __name__ == "__main__":
    sys.exit(main())
