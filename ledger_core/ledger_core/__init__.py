"""Platform fee ledger core: fee rules, ledger state, reconciliation and alerting."""

__version__ = "0.1.0"
