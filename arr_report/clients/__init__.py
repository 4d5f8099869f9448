"""
Clients for the external data sources.

Provides the CRM, billing-ledger and FX rate readers used by the report and
sync layers.
"""

from .crm import CrmClient
from .fx import FrankfurterRateSource
from .ledger import LedgerClient, LedgerInvoice, LedgerLine, LedgerPage

__all__ = [
    "CrmClient",
    "FrankfurterRateSource",
    "LedgerClient",
    "LedgerInvoice",
    "LedgerLine",
    "LedgerPage",
]
