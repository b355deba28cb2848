"""In-memory ledger for controller and lookup table tests.

Executes rebase and lookup table instructions against simulated accounts,
advances the clock when the code under test sleeps, and records every
transaction it accepts.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field, replace
from typing import Callable, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from rebaser.ledger.accounts import (
    ACTIVE_DEACTIVATION_SLOT,
    CHECKPOINT_DISCRIMINATOR,
    CHECKPOINT_LAYOUT,
    DISCRIMINATOR_SIZE,
    LOOKUP_TABLE_HEADER,
    LOOKUP_TABLE_PROGRAM_ID,
    LOOKUP_TABLE_STATE_TAG,
    STAKE_DISCRIMINATOR,
    STAKE_LAYOUT,
    checkpoint_address,
    pool_address,
)
from rebaser.ledger.gateway import LedgerClock, LedgerGateway, PlannedTransaction
from rebaser.ledger.instructions import (
    CLOSE_LOOKUP_TABLE,
    CREATE_LOOKUP_TABLE,
    DEACTIVATE_LOOKUP_TABLE,
    EXTEND_LOOKUP_TABLE,
    REBASE_DISCRIMINATOR,
)
from rebaser.shared.errors import (
    AccountNotFoundError,
    ResourceRejected,
    TransactionRejectedError,
    TransportFailure,
)

SLOTS_PER_SECOND = 2.5
MAX_TABLE_ADDRESSES = 256
COOLDOWN_SLOTS = 512


def lookup_table_op(tag: int) -> Callable[[Sequence[Instruction]], bool]:
    """Matches transactions carrying a lookup table instruction with `tag`."""
    def predicate(instructions: Sequence[Instruction]) -> bool:
        return any(ix.program_id == LOOKUP_TABLE_PROGRAM_ID and ix.data[0] == tag for ix in instructions)
    return predicate


def nth_match(
    predicate: Callable[[Sequence[Instruction]], bool], n: int
) -> Callable[[Sequence[Instruction]], bool]:
    """Matches only the n-th (1-based) transaction accepted by predicate."""
    seen = {"count": 0}

    def matcher(instructions: Sequence[Instruction]) -> bool:
        if not predicate(instructions):
            return False
        seen["count"] += 1
        return seen["count"] == n
    return matcher


def discriminator(tag: int) -> bytes:
    return bytes([tag]) + bytes(DISCRIMINATOR_SIZE - 1)


@dataclass
class FakeStake:
    address: Pubkey
    id: int
    authority: Pubkey
    balance: int = 1_000


@dataclass
class FakePool:
    mint: Pubkey
    pool: Pubkey
    checkpoint: Pubkey
    cursor: int = 0
    last_rebase_time: int = 0
    stakes: list[FakeStake] = field(default_factory=list)

    @property
    def total_stakers(self) -> int:
        return len(self.stakes)


@dataclass
class FakeTable:
    addresses: list[Pubkey]
    authority: Pubkey
    deactivation_slot: int = ACTIVE_DEACTIVATION_SLOT
    last_extended_slot: int = 0


@dataclass
class Injection:
    predicate: Callable[[Sequence[Instruction]], bool]
    error: Exception
    times: int = 1


class FakeLedger(LedgerGateway):
    """Single-writer ledger simulator implementing the gateway contract."""

    def __init__(
        self,
        program_id: Pubkey,
        *,
        unix_timestamp: int = 1_700_000_000,
        slot: int = 10_000,
        max_rebases_without_tables: int | None = None,
    ) -> None:
        self.program_id = program_id
        self.unix_timestamp = unix_timestamp
        self.slot = slot
        self.max_rebases_without_tables = max_rebases_without_tables
        self.pools: dict[Pubkey, FakePool] = {}
        self.tables: dict[Pubkey, FakeTable] = {}
        self.transactions: list[list[Instruction]] = []
        self.bundles: list[list[list[Instruction]]] = []
        self.rebased: dict[Pubkey, list[Pubkey]] = {}
        self.completions: dict[Pubkey, int] = {}
        self.injections: list[Injection] = []
        self.lookup_table_calls: list[str] = []
        self.closed: list[Pubkey] = []
        self.read_failures = 0

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------
    def add_pool(self, mint: Pubkey, *, last_rebase_time: int, participants: int = 0, cursor: int = 0) -> FakePool:
        pool = pool_address(mint, self.program_id)
        state = FakePool(
            mint=mint,
            pool=pool,
            checkpoint=checkpoint_address(pool, self.program_id),
            cursor=cursor,
            last_rebase_time=last_rebase_time,
            stakes=[FakeStake(Pubkey.new_unique(), i, Pubkey.new_unique()) for i in range(participants)],
        )
        self.pools[pool] = state
        self.rebased[pool] = []
        self.completions[pool] = 0
        return state

    def inject(
        self,
        error: Exception,
        predicate: Callable[[Sequence[Instruction]], bool] = lambda ixs: True,
        times: int = 1,
    ) -> None:
        """Fail the next `times` transactions matching predicate with error."""
        self.injections.append(Injection(predicate, error, times))

    async def sleep(self, seconds: float) -> None:
        self.unix_timestamp += int(seconds)
        self.slot += int(seconds * SLOTS_PER_SECOND)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_account(self, address: Pubkey) -> bytes:
        self._check_read()
        for state in self.pools.values():
            if address == state.checkpoint:
                return discriminator(CHECKPOINT_DISCRIMINATOR) + CHECKPOINT_LAYOUT.pack(
                    bytes(state.pool), state.cursor, 0, 0, state.total_stakers, state.last_rebase_time
                )
            for stake in state.stakes:
                if stake.address == address:
                    return self._encode_stake(state, stake)
        table = self.tables.get(address)
        if table is not None:
            return self._encode_table(table)
        raise AccountNotFoundError(address)

    async def get_program_accounts(
        self,
        program_id: Pubkey,
        type_discriminator: int,
        owner_filter: tuple[int, bytes],
    ) -> list[tuple[Pubkey, bytes]]:
        offset, needle = owner_filter
        results = []
        if program_id != self.program_id or type_discriminator != STAKE_DISCRIMINATOR:
            return results
        for state in self.pools.values():
            for stake in reversed(state.stakes):
                data = self._encode_stake(state, stake)
                if data[offset:offset + len(needle)] == needle:
                    results.append((stake.address, data))
        return results

    async def get_clock(self) -> LedgerClock:
        self._check_read()
        return LedgerClock(unix_timestamp=self.unix_timestamp, slot=self.slot)

    def _check_read(self) -> None:
        if self.read_failures > 0:
            self.read_failures -= 1
            raise TransportFailure("simulated read failure")

    def _encode_stake(self, state: FakePool, stake: FakeStake) -> bytes:
        return discriminator(STAKE_DISCRIMINATOR) + STAKE_LAYOUT.pack(
            bytes(stake.authority), stake.balance, 0, bytes(state.pool), stake.id, 0, 0
        )

    def _encode_table(self, table: FakeTable) -> bytes:
        header = LOOKUP_TABLE_HEADER.pack(
            LOOKUP_TABLE_STATE_TAG, table.deactivation_slot, table.last_extended_slot, 0
        )
        meta = header + b"\x01" + bytes(table.authority) + bytes(2)
        return meta + b"".join(bytes(address) for address in table.addresses)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def send_transaction(self, instructions, compute_units, lookup_tables=()) -> str:
        self._execute_atomic([list(instructions)], lookup_tables)
        self.transactions.append(list(instructions))
        self.slot += 1
        return f"sig-{len(self.transactions)}"

    async def send_atomic_bundle(self, transactions: Sequence[PlannedTransaction], lookup_tables=()) -> str:
        groups = [list(planned.instructions) for planned in transactions]
        self._execute_atomic(groups, lookup_tables)
        self.transactions.extend(groups)
        self.bundles.append(groups)
        self.slot += 1
        return f"bundle-{len(self.bundles)}"

    def _check_injections(self, instructions: Sequence[Instruction]) -> None:
        for injection in self.injections:
            if injection.times > 0 and injection.predicate(instructions):
                injection.times -= 1
                raise injection.error

    def _snapshot(self):
        pools = {key: replace(state, stakes=list(state.stakes)) for key, state in self.pools.items()}
        tables = {key: replace(table, addresses=list(table.addresses)) for key, table in self.tables.items()}
        rebased = {key: list(value) for key, value in self.rebased.items()}
        return pools, tables, rebased, dict(self.completions), list(self.lookup_table_calls), list(self.closed)

    def _restore(self, snapshot) -> None:
        self.pools, self.tables, self.rebased, self.completions, self.lookup_table_calls, self.closed = snapshot

    def _execute_atomic(self, groups: list[list[Instruction]], lookup_tables) -> None:
        snapshot = self._snapshot()
        try:
            for instructions in groups:
                self._check_injections(instructions)
                rebases = sum(1 for ix in instructions if ix.program_id == self.program_id)
                if (
                    self.max_rebases_without_tables is not None
                    and not lookup_tables
                    and rebases > self.max_rebases_without_tables
                ):
                    raise ResourceRejected(f"transaction with {rebases} rebases too large")
                for ix in instructions:
                    self._execute(ix)
        except Exception:
            self._restore(snapshot)
            raise

    def _execute(self, ix: Instruction) -> None:
        if ix.program_id == self.program_id:
            self._rebase(ix)
        elif ix.program_id == LOOKUP_TABLE_PROGRAM_ID:
            self._lookup_table(ix)
        else:
            raise TransactionRejectedError(f"unknown program {ix.program_id}")

    def _rebase(self, ix: Instruction) -> None:
        if ix.data[0] != REBASE_DISCRIMINATOR:
            raise TransactionRejectedError("unknown boost instruction")
        state = self.pools.get(ix.accounts[1].pubkey)
        if state is None or ix.accounts[2].pubkey != state.checkpoint:
            raise TransactionRejectedError("unknown pool")
        stake_address = ix.accounts[3].pubkey

        if state.cursor >= state.total_stakers:
            # Checkpoint finishes: new interval begins.
            state.cursor = 0
            state.last_rebase_time = self.unix_timestamp
            self.completions[state.pool] += 1
            return

        stake = next((s for s in state.stakes if s.address == stake_address), None)
        if stake is None or stake.id != state.cursor:
            raise TransactionRejectedError(
                f"rebase out of order: expected id {state.cursor}, got {stake.id if stake else stake_address}"
            )
        state.cursor += 1
        self.rebased[state.pool].append(stake.address)

    def _lookup_table(self, ix: Instruction) -> None:
        (tag,) = struct.unpack_from("<I", ix.data, 0)
        address = ix.accounts[0].pubkey
        if tag == CREATE_LOOKUP_TABLE:
            _, recent_slot, _bump = struct.unpack_from("<IQB", ix.data, 0)
            if recent_slot > self.slot:
                raise TransactionRejectedError("recent slot in the future")
            if address in self.tables:
                raise TransactionRejectedError(f"table {address} already exists")
            self.tables[address] = FakeTable(addresses=[], authority=ix.accounts[1].pubkey)
            self.lookup_table_calls.append("create")
        elif tag == EXTEND_LOOKUP_TABLE:
            table = self._table(address)
            if table.deactivation_slot != ACTIVE_DEACTIVATION_SLOT:
                raise TransactionRejectedError("table is deactivated")
            _, count = struct.unpack_from("<IQ", ix.data, 0)
            body = ix.data[12:]
            added = [Pubkey(body[i * 32:(i + 1) * 32]) for i in range(count)]
            if len(table.addresses) + len(added) > MAX_TABLE_ADDRESSES:
                raise TransactionRejectedError("table is full")
            table.addresses.extend(added)
            table.last_extended_slot = self.slot
            self.lookup_table_calls.append("extend")
        elif tag == DEACTIVATE_LOOKUP_TABLE:
            table = self._table(address)
            if table.deactivation_slot != ACTIVE_DEACTIVATION_SLOT:
                raise TransactionRejectedError("table already deactivated")
            table.deactivation_slot = self.slot
            self.lookup_table_calls.append("deactivate")
        elif tag == CLOSE_LOOKUP_TABLE:
            table = self._table(address)
            if table.deactivation_slot == ACTIVE_DEACTIVATION_SLOT:
                raise TransactionRejectedError("table is still active")
            if self.slot <= table.deactivation_slot + COOLDOWN_SLOTS:
                raise TransactionRejectedError("table closed before cooldown elapsed")
            del self.tables[address]
            self.closed.append(address)
            self.lookup_table_calls.append("close")
        else:
            raise TransactionRejectedError(f"unknown lookup table instruction {tag}")

    def _table(self, address: Pubkey) -> FakeTable:
        table = self.tables.get(address)
        if table is None:
            raise TransactionRejectedError(f"table {address} does not exist")
        return table
