"""
Ledger gateway contract.

The controller, batcher and lookup table manager only talk to the ledger
through this interface. Implementations must tolerate concurrent use from
unrelated pools.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import NamedTuple, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction
from solders.pubkey import Pubkey


@dataclass(frozen=True)
class LedgerClock:
    """Ledger clock sysvar values the agent cares about."""

    unix_timestamp: int
    slot: int


class PlannedTransaction(NamedTuple):
    """One transaction inside an atomic bundle."""

    instructions: Sequence[Instruction]
    compute_units: int


class LedgerGateway(ABC):
    """Read/write accessor to the ledger."""

    @abstractmethod
    async def get_account(self, address: Pubkey) -> bytes:
        """Return raw account data or raise AccountNotFoundError / TransportFailure."""

    @abstractmethod
    async def get_program_accounts(
        self,
        program_id: Pubkey,
        type_discriminator: int,
        owner_filter: tuple[int, bytes],
    ) -> list[tuple[Pubkey, bytes]]:
        """Scan accounts owned by program_id with the given discriminator and memcmp filter."""

    @abstractmethod
    async def get_clock(self) -> LedgerClock:
        """Return the current ledger clock."""

    @abstractmethod
    async def send_transaction(
        self,
        instructions: Sequence[Instruction],
        compute_units: int,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
    ) -> str:
        """Submit one transaction and return its confirmed signature."""

    @abstractmethod
    async def send_atomic_bundle(
        self,
        transactions: Sequence[PlannedTransaction],
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
    ) -> str:
        """Submit transactions all-or-nothing and return the bundle id."""
