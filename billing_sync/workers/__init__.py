"""Background workers."""
from .ledger_pruner import LedgerPruner

__all__ = ["LedgerPruner"]
