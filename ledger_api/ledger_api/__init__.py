"""HTTP surface for the platform fee ledger."""

__version__ = "0.1.0"
