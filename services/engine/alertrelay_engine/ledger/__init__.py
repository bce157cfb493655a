"""Trade ledger."""

from alertrelay_engine.ledger.state import ConfigurationState, derive_state
from alertrelay_engine.ledger.trade_ledger import LedgerOutcome, TradeLedger

__all__ = ["ConfigurationState", "LedgerOutcome", "TradeLedger", "derive_state"]
