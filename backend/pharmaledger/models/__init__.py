"""Aggregate model imports so LedgerBase.metadata sees every table."""

from pharmaledger.models.ledger_history import LedgerHistory  # noqa: F401
from pharmaledger.models.ledger_state import LedgerState  # noqa: F401
