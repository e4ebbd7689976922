"""HTTP API for the nomina engine."""
