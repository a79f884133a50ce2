"""Fiscal document issuance, hash-chain signing and SAF-T AO export."""

__version__ = "1.0.0"
