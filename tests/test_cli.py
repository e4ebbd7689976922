"""Tests for the formula command line tools."""

import argparse
import json
from decimal import Decimal

import pytest

from nomina_engine.cli import NominaCli, parse_assignment


class TestParseAssignment:
    def test_number(self):
        assert parse_assignment("seniority=7") == ("seniority", Decimal("7"))

    def test_boolean(self):
        assert parse_assignment("flag=True") == ("flag", True)

    @pytest.mark.parametrize("raw", ["seniority", "=7", "seniority=abc"])
    def test_invalid(self, raw):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_assignment(raw)


class TestCommands:
    """Test CLI commands end to end."""

    def test_no_command_prints_help(self, capsys):
        assert NominaCli().run([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_validate_valid(self, capsys):
        assert NominaCli().run(["validate", "baseSalary / 30 * workedDays"]) == 0
        out = capsys.readouterr().out
        assert "✓ valid" in out
        assert "baseSalary, workedDays" in out

    def test_validate_invalid(self, capsys):
        assert NominaCli().run(["validate", "baseSalary / "]) == 1
        assert "✗ SYNTAX_ERROR" in capsys.readouterr().err

    def test_validate_unknown_identifier(self, capsys):
        assert NominaCli().run(["validate", "salario * 2"]) == 1
        err = capsys.readouterr().err
        assert "UNKNOWN_IDENTIFIER" in err
        assert "salario" in err

    def test_validate_concept_reference(self, capsys):
        assert NominaCli().run(["validate", "percentOf(SUELDO, 10)"]) == 1
        capsys.readouterr()

        code = NominaCli().run(["validate", "percentOf(SUELDO, 10)", "--concept", "SUELDO"])
        assert code == 0
        assert "SUELDO" in capsys.readouterr().out

    def test_test_with_overrides(self, capsys):
        code = NominaCli().run(["test", "if(seniority >= 5, 500, 0)", "--set", "seniority=7"])
        assert code == 0
        assert capsys.readouterr().out.strip() == "500.00"

    def test_test_json(self, capsys):
        code = NominaCli().run(
            ["test", "dailySalary * workedDays", "--set", "dailySalary=300", "--set", "workedDays=2", "--json"]
        )
        assert code == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["success"] is True
        assert payload["result"] == "600.00"
        assert payload["context"]["dailySalary"] == "300"

    def test_test_runtime_error(self, capsys):
        assert NominaCli().run(["test", "100 / custom1"]) == 1
        assert "DIVISION_BY_ZERO" in capsys.readouterr().err

    def test_identifiers(self, capsys):
        assert NominaCli().run(["identifiers"]) == 0
        out = capsys.readouterr().out
        assert "workedDays" in out
        assert "percentOf" in out

    def test_templates_filtered(self, capsys):
        assert NominaCli().run(["templates", "--type", "DEDUCTION"]) == 0
        out = capsys.readouterr().out
        assert "P_SUELDO" not in out
        assert "PERCEPTION" not in out
