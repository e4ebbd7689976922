"""Nomina engine: formula-driven payroll calculation and CFDI lifecycle."""

__version__ = "1.0.0"
