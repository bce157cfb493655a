"""AlertRelay engine: signal ingestion, trade ledger and subscriber delivery."""

__version__ = "0.1.0"
