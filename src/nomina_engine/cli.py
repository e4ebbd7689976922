"""Nomina engine command line interface.

Formula authoring helpers usable without a running API:

Usage:
    python -m nomina_engine.cli identifiers
    python -m nomina_engine.cli validate "baseSalary / 30 * workedDays"
    python -m nomina_engine.cli validate "percentOf(SUELDO, 10)" --concept SUELDO
    python -m nomina_engine.cli test "if(seniority >= 5, 500, 0)" --set seniority=7
    python -m nomina_engine.cli templates [--type PERCEPTION]
    python -m nomina_engine.cli init-db
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from decimal import Decimal
from typing import Any, Callable

from nomina_engine.calculators.formula_evaluator import FUNCTION_DESCRIPTIONS, FormulaEvaluator
from nomina_engine.calculators.formula_parser import UnknownIdentifierError
from nomina_engine.calculators.formula_templates import list_templates
from nomina_engine.config import get_settings
from nomina_engine.logging_config import configure_logging


def parse_assignment(s: str) -> tuple[str, Decimal | bool]:
    """Parse ``name=value`` into an identifier and a number or boolean."""
    name, sep, raw = s.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected name=value, got '{s}'")
    lowered = raw.strip().lower()
    if lowered in ("true", "false"):
        return name.strip(), lowered == "true"
    try:
        return name.strip(), Decimal(raw.strip())
    except ArithmeticError:
        raise argparse.ArgumentTypeError(f"'{raw}' is not a number")


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Cannot serialize {type(value).__name__}")


class NominaCli:
    """Nomina engine command line interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()
        self.evaluator: FormulaEvaluator | None = None

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m nomina_engine.cli",
            description="Nomina engine formula tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("identifiers", help="List identifiers and functions usable in formulas")

        validate = subparsers.add_parser("validate", help="Check a formula's syntax and identifiers")
        validate.add_argument("formula", help="Formula text")
        validate.add_argument(
            "--concept",
            dest="concepts",
            action="append",
            default=[],
            metavar="CODE",
            help="Concept code the formula may reference (repeatable)",
        )

        test = subparsers.add_parser("test", help="Evaluate a formula against sample values")
        test.add_argument("formula", help="Formula text")
        test.add_argument(
            "--set",
            dest="values",
            type=parse_assignment,
            action="append",
            default=[],
            metavar="NAME=VALUE",
            help="Override a sample value (repeatable)",
        )
        test.add_argument("--json", action="store_true", help="Print the full result as JSON")

        templates = subparsers.add_parser("templates", help="List predefined concept templates")
        templates.add_argument(
            "--type",
            choices=["PERCEPTION", "DEDUCTION"],
            help="Only show templates of this type",
        )

        subparsers.add_parser("init-db", help="Create all tables in the configured database")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        settings = get_settings()
        configure_logging(settings.log_level)
        self.evaluator = FormulaEvaluator.from_settings(settings)

        handlers: dict[str, Callable[..., int]] = {
            "identifiers": self._cmd_identifiers,
            "validate": self._cmd_validate,
            "test": self._cmd_test,
            "templates": self._cmd_templates,
            "init-db": self._cmd_init_db,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _cmd_identifiers(self, args: argparse.Namespace) -> int:
        print("Identifiers")
        print("=" * 40)
        for name in self.evaluator.list_available_identifiers():
            print(f"  {name}")
        print("\nFunctions")
        print("=" * 40)
        for name in self.evaluator.list_available_functions():
            print(f"  {name:<14} {FUNCTION_DESCRIPTIONS[name]}")
        return 0

    def _cmd_validate(self, args: argparse.Namespace) -> int:
        result = self.evaluator.check(args.formula)
        if not result.valid:
            print(f"✗ {result.kind}: {result.error}", file=sys.stderr)
            return 1

        known = set(self.evaluator.list_available_identifiers()) | set(args.concepts)
        unknown = [name for name in result.identifiers if name not in known]
        if unknown:
            print(
                f"✗ {UnknownIdentifierError.kind}: unknown identifier(s) {', '.join(unknown)}",
                file=sys.stderr,
            )
            return 1

        print("✓ valid")
        if result.identifiers:
            print(f"  references: {', '.join(result.identifiers)}")
        return 0

    def _cmd_test(self, args: argparse.Namespace) -> int:
        sample = dict(args.values)
        result = self.evaluator.test(args.formula, sample)
        if args.json:
            payload = {
                "success": result.success,
                "result": result.result,
                "error": result.error,
                "kind": result.kind,
                "context": result.context,
            }
            print(json.dumps(payload, default=_json_default, indent=2, sort_keys=True))
        elif result.success:
            print(result.result)
        else:
            print(f"✗ {result.kind}: {result.error}", file=sys.stderr)
        return 0 if result.success else 1

    def _cmd_templates(self, args: argparse.Namespace) -> int:
        for template in list_templates():
            if args.type and template.concept_type.value != args.type:
                continue
            print(f"{template.code:<24} {template.concept_type.value:<11} {template.formula}")
            print(f"{'':<24} {template.description}")
        return 0

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        from nomina_engine.database import create_all, dispose_db

        async def run() -> None:
            await create_all()
            await dispose_db()

        asyncio.run(run())
        print("Tables created")
        return 0


def main() -> int:
    """CLI entry point."""
    cli = NominaCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
