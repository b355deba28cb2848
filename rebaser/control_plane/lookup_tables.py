"""
REBASER lookup table lifecycle manager.

Keeps every participant address of a pool registered in an address lookup
table so rebase transactions naming dozens of participants stay under the
transaction size limit, and rotates those tables once per completed cycle:

  - sync: extend tables with spare capacity, open new tables for the rest
  - rotate: deactivate, wait out the cooldown, close, pre-open for next cycle

Per-table and per-chunk failures are recorded on the report and the pass
continues; the controller decides whether to back off.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Collection, Sequence

from solders.pubkey import Pubkey

from rebaser.control_plane.registry import LookupTableRegistry
from rebaser.ledger.accounts import AccountDecodeError, BoostAccounts, LookupTable, Participant
from rebaser.ledger.gateway import LedgerGateway
from rebaser.ledger.instructions import (
    close_lookup_table,
    create_lookup_table,
    deactivate_lookup_table,
    extend_lookup_table,
)
from rebaser.shared.errors import PartialBatchFailure, RebaserError
from rebaser.shared.logging import LOOKUP_TABLES_LOGGER, PoolLogger
from rebaser.shared.settings import (
    LOOKUP_TABLE_COOLDOWN_SLOTS,
    MAX_ADDRESSES_PER_LOOKUP_TABLE,
)
from rebaser.shared.utils import chunk_list

logger = logging.getLogger(LOOKUP_TABLES_LOGGER)

LOOKUP_TABLE_COMPUTE_UNITS = 200_000


@dataclass(frozen=True)
class TableFailure:
    table: Pubkey | None
    operation: str
    error: RebaserError


@dataclass
class LookupTableReport:
    """Outcome of a sync or rotate pass, tracked per table and chunk."""

    pool: str
    operation: str
    created: list[Pubkey] = field(default_factory=list)
    extended_chunks: int = 0
    extended_addresses: int = 0
    deactivated: list[Pubkey] = field(default_factory=list)
    closed: list[Pubkey] = field(default_factory=list)
    deferred: list[Pubkey] = field(default_factory=list)
    failures: list[TableFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.deferred

    @property
    def failure_count(self) -> int:
        return len(self.failures) + len(self.deferred)

    @property
    def success_count(self) -> int:
        return len(self.created) + self.extended_chunks + len(self.deactivated) + len(self.closed)

    def merge(self, other: "LookupTableReport") -> None:
        self.created.extend(other.created)
        self.extended_chunks += other.extended_chunks
        self.extended_addresses += other.extended_addresses
        self.deactivated.extend(other.deactivated)
        self.closed.extend(other.closed)
        self.deferred.extend(other.deferred)
        self.failures.extend(other.failures)

    def raise_for_failure(self) -> None:
        if self.ok:
            return
        raise PartialBatchFailure(
            f"lookup table {self.operation}",
            succeeded=self.success_count,
            failed=self.failure_count,
            total=self.success_count + self.failure_count,
            cause=self.failures[0].error if self.failures else None,
            pool=self.pool,
            phase=f"lut_{self.operation}",
            deferred=len(self.deferred),
        )


class LookupTableManager:
    """Creates, extends, deactivates and closes a pool's lookup tables."""

    def __init__(
        self,
        *,
        gateway: LedgerGateway,
        accounts: BoostAccounts,
        registry: LookupTableRegistry,
        authority: Pubkey,
        max_addresses: int = MAX_ADDRESSES_PER_LOOKUP_TABLE,
        extend_chunk_size: int = 26,
        close_chunk_size: int = 10,
        deactivation_wait_seconds: float = 240.0,
        cooldown_slots: int = LOOKUP_TABLE_COOLDOWN_SLOTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.accounts = accounts
        self.registry = registry
        self.authority = authority
        self.max_addresses = max_addresses
        self.extend_chunk_size = extend_chunk_size
        self.close_chunk_size = close_chunk_size
        self.deactivation_wait_seconds = deactivation_wait_seconds
        self.cooldown_slots = cooldown_slots
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def registered(self, pool: Pubkey) -> list[Pubkey]:
        return list(dict.fromkeys(self.registry.tables(pool)))

    async def load_tables(self, pool: Pubkey) -> list[LookupTable]:
        """
        Fetch every registered table for the pool.

        Tables that no longer exist (closed, or never created because the
        create transaction failed) are pruned from the registry. Transport
        failures propagate: table contents must be known before syncing.
        """
        registered = self.registered(pool)
        tables: list[LookupTable] = []
        pruned = 0
        for address in registered:
            try:
                table = await self.accounts.fetch_lookup_table(address)
            except AccountDecodeError as exc:
                logger.error("%s -- registered table %s is not a lookup table: %s", pool, address, exc)
                table = None
            if table is None:
                pruned += 1
                continue
            tables.append(table)

        if pruned:
            logger.info("%s -- pruning %d vanished lookup tables from registry", pool, pruned)
            self.registry.retain(pool, [table.address for table in tables])
        return tables

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------
    async def sync(
        self,
        pool: Pubkey,
        participants: Sequence[Participant] | None = None,
    ) -> LookupTableReport:
        """Make sure every participant address sits in one of the pool's tables."""
        log = PoolLogger(logger, pool, "lut_sync")
        log.info("syncing lookup tables")
        if participants is None:
            participants = await self.accounts.fetch_participants(pool)
        tables = await self.load_tables(pool)

        tabled = {address for table in tables for address in table.addresses}
        untabled = list(dict.fromkeys(
            p.address for p in sorted(participants, key=lambda p: p.id) if p.address not in tabled
        ))
        log.info("num tabled addresses: %d", len(tabled))
        log.info("num untabled addresses: %d", len(untabled))

        report = LookupTableReport(pool=str(pool), operation="sync")
        if not untabled:
            return report

        for table in tables:
            if not untabled:
                break
            capacity = table.capacity_remaining(self.max_addresses)
            if not table.is_active or capacity == 0:
                continue
            take, untabled = untabled[:capacity], untabled[capacity:]
            log.info("extending table %s with %d addresses", table.address, len(take))
            await self._extend(table.address, take, report, log)

        used_slots: set[int] = set()
        while untabled:
            take, untabled = untabled[:self.max_addresses], untabled[self.max_addresses:]
            address = await self._create(pool, used_slots, report, log)
            if address is None:
                log.warning("%d addresses left untabled after failed create", len(take) + len(untabled))
                break
            await self._extend(address, take, report, log)

        return report

    async def _create(
        self,
        pool: Pubkey,
        used_slots: set[int],
        report: LookupTableReport,
        log: PoolLogger,
    ) -> Pubkey | None:
        try:
            clock = await self.gateway.get_clock()
        except RebaserError as exc:
            report.failures.append(TableFailure(None, "create", exc))
            log.error("unable to read clock for table creation [%s]: %s", exc.kind.value, exc)
            return None

        recent_slot = clock.slot
        while recent_slot in used_slots:
            recent_slot -= 1
        used_slots.add(recent_slot)

        ix, address = create_lookup_table(self.authority, self.authority, recent_slot)
        # Registered before create or extend is sent.
        self.registry.append(pool, address)
        log.info("opening new lookup table %s", address)
        try:
            signature = await self.gateway.send_transaction([ix], LOOKUP_TABLE_COMPUTE_UNITS)
        except RebaserError as exc:
            report.failures.append(TableFailure(address, "create", exc))
            log.error("create of table %s failed [%s]: %s", address, exc.kind.value, exc)
            return None
        log.info("new lookup table signature: %s", signature)
        report.created.append(address)
        return address

    async def _extend(
        self,
        table: Pubkey,
        addresses: Sequence[Pubkey],
        report: LookupTableReport,
        log: PoolLogger,
    ) -> None:
        for chunk in chunk_list(addresses, self.extend_chunk_size):
            ix = extend_lookup_table(table, self.authority, self.authority, chunk)
            try:
                await self.gateway.send_transaction([ix], LOOKUP_TABLE_COMPUTE_UNITS)
            except RebaserError as exc:
                report.failures.append(TableFailure(table, "extend", exc))
                log.error(
                    "extend of table %s with %d addresses failed [%s]: %s",
                    table, len(chunk), exc.kind.value, exc,
                )
                continue
            report.extended_chunks += 1
            report.extended_addresses += len(chunk)

    # ------------------------------------------------------------------
    # Rotate
    # ------------------------------------------------------------------
    async def rotate(self, pool: Pubkey, retiring: Collection[Pubkey] | None = None) -> LookupTableReport:
        """
        Close the pool's current tables and pre-open tables for the next cycle.

        `retiring` limits the pass to the tables registered when the rotation
        began, so a retried rotation leaves tables it already pre-opened alone.
        """
        log = PoolLogger(logger, pool, "lut_rotate")
        report = LookupTableReport(pool=str(pool), operation="rotate")
        loaded = await self.load_tables(pool)
        if retiring is None:
            tables = loaded
        else:
            keep = set(retiring)
            tables = [t for t in loaded if t.address in keep]
            log.info("retiring %d of %d registered lookup tables", len(tables), len(loaded))

        for table in tables:
            if not table.is_active:
                continue
            try:
                await self.gateway.send_transaction(
                    [deactivate_lookup_table(table.address, self.authority)],
                    LOOKUP_TABLE_COMPUTE_UNITS,
                )
            except RebaserError as exc:
                report.failures.append(TableFailure(table.address, "deactivate", exc))
                log.error("deactivate of table %s failed [%s]: %s", table.address, exc.kind.value, exc)
                continue
            report.deactivated.append(table.address)
        log.info("deactivated %d lookup tables", len(report.deactivated))

        pending = [t.address for t in tables if not t.is_active or t.address in report.deactivated]
        vanished: set[Pubkey] = set()
        if pending:
            log.info("waiting %.0fs for deactivation cooldown", self.deactivation_wait_seconds)
            await self._sleep(self.deactivation_wait_seconds)
            await self._close(pending, report, vanished, log)

        finished = set(report.closed) | vanished
        remaining = [t.address for t in loaded if t.address not in finished]
        if remaining:
            self.registry.retain(pool, remaining)
        else:
            self.registry.clear(pool)

        participants = await self.accounts.fetch_participants(pool)
        report.merge(await self.sync(pool, participants))
        return report

    async def _close(
        self,
        pending: Sequence[Pubkey],
        report: LookupTableReport,
        vanished: set[Pubkey],
        log: PoolLogger,
    ) -> None:
        clock = await self.gateway.get_clock()
        closeable: list[Pubkey] = []
        for address in pending:
            table = await self.accounts.fetch_lookup_table(address)
            if table is None:
                vanished.add(address)
                continue
            if table.is_closeable(clock.slot, self.cooldown_slots):
                closeable.append(address)
            else:
                report.deferred.append(address)
                log.warning(
                    "table %s still cooling down (deactivated at slot %d, now %d)",
                    address, table.deactivation_slot, clock.slot,
                )

        for chunk in chunk_list(closeable, self.close_chunk_size):
            ixs = [close_lookup_table(address, self.authority, self.authority) for address in chunk]
            try:
                await self.gateway.send_transaction(ixs, LOOKUP_TABLE_COMPUTE_UNITS)
            except RebaserError as exc:
                for address in chunk:
                    report.failures.append(TableFailure(address, "close", exc))
                log.error("close of %d tables failed [%s]: %s", len(chunk), exc.kind.value, exc)
                continue
            report.closed.extend(chunk)
            log.info("closed %d lookup tables", len(chunk))
