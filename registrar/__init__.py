"""
River Intel - Registrar Module
Audit trail for ingestion runs.
"""

from .ledger import RunLedger, terminal_status

__all__ = ["RunLedger", "terminal_status"]
