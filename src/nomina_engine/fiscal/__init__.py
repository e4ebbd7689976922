"""CFDI rendering and PAC integration."""
