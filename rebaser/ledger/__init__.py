"""
REBASER ledger access.

The gateway contract, account layouts and instruction builders the control
plane uses to read and drive the boost program.
"""

from .accounts import BoostAccounts, Checkpoint, LookupTable, Participant
from .gateway import LedgerClock, LedgerGateway, PlannedTransaction
from .rpc_gateway import BundleRelay, RpcLedgerGateway, load_keypair

__all__ = [
    "BoostAccounts",
    "BundleRelay",
    "Checkpoint",
    "LedgerClock",
    "LedgerGateway",
    "LookupTable",
    "Participant",
    "PlannedTransaction",
    "RpcLedgerGateway",
    "load_keypair",
]
