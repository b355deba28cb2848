"""
REBASER stake batcher.

Partitions the remaining participants into transaction-sized rebase batches
and submits them, either one transaction at a time or as atomic bundles.
Both strategies stop at the first failure: the ledger cursor only advances
in id order, so nothing after a failed unit can land anyway.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction

from rebaser.ledger.accounts import Participant
from rebaser.ledger.gateway import LedgerGateway, PlannedTransaction
from rebaser.shared.errors import PartialBatchFailure, RebaserError
from rebaser.shared.logging import BATCHER_LOGGER, PoolLogger
from rebaser.shared.utils import chunk_list

logger = logging.getLogger(BATCHER_LOGGER)

BuildInstructions = Callable[["RebaseBatch"], list[Instruction]]


@dataclass(frozen=True)
class RebaseBatch:
    """One transaction's worth of participants, ascending by id."""

    index: int
    participants: tuple[Participant, ...]
    compute_units: int

    @property
    def size(self) -> int:
        return len(self.participants)

    @property
    def first_id(self) -> int:
        return self.participants[0].id

    @property
    def last_id(self) -> int:
        return self.participants[-1].id


class StakeBatcher:
    """Pure partitioning of remaining participants into rebase batches."""

    def __init__(
        self,
        chunk_size: int,
        compute_units_base: int = 20_000,
        compute_units_per_rebase: int = 30_000,
    ) -> None:
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size
        self.compute_units_base = compute_units_base
        self.compute_units_per_rebase = compute_units_per_rebase

    def compute_units(self, size: int) -> int:
        return self.compute_units_base + self.compute_units_per_rebase * size

    def partition(self, remaining: Sequence[Participant]) -> list[RebaseBatch]:
        ordered = sorted(remaining, key=lambda p: p.id)
        return [
            RebaseBatch(index=i, participants=tuple(chunk), compute_units=self.compute_units(len(chunk)))
            for i, chunk in enumerate(chunk_list(ordered, self.chunk_size))
        ]


def bundle(batches: Sequence[RebaseBatch], bundle_size: int) -> list[list[RebaseBatch]]:
    """Group consecutive batches into bundles of at most bundle_size."""
    return chunk_list(list(batches), bundle_size)


# =============================================================================
# Submission
# =============================================================================
@dataclass
class SubmissionReport:
    """Per-unit outcome of a submission pass."""

    pool: str
    mode: str
    total_units: int
    succeeded_units: int = 0
    failed_unit: int | None = None
    last_submitted_id: int | None = None
    handles: list[str] = field(default_factory=list)
    error: RebaserError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_failure(self) -> None:
        if self.error is None:
            return
        raise PartialBatchFailure(
            f"{self.mode} rebase submission",
            succeeded=self.succeeded_units,
            failed=self.total_units - self.succeeded_units,
            total=self.total_units,
            cause=self.error,
            pool=self.pool,
            phase="submit",
            failed_unit=self.failed_unit,
            last_submitted_id=self.last_submitted_id,
        ) from self.error


class Submitter(ABC):
    """Strategy for getting rebase batches onto the ledger."""

    mode = "abstract"

    def __init__(self, gateway: LedgerGateway) -> None:
        self.gateway = gateway

    @abstractmethod
    async def submit(
        self,
        pool: str,
        batches: Sequence[RebaseBatch],
        build_instructions: BuildInstructions,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
    ) -> SubmissionReport:
        """Submit batches in order, stopping at the first failed unit."""


class SequentialSubmitter(Submitter):
    """One compute-budgeted transaction per batch."""

    mode = "sequential"

    async def submit(
        self,
        pool: str,
        batches: Sequence[RebaseBatch],
        build_instructions: BuildInstructions,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
    ) -> SubmissionReport:
        log = PoolLogger(logger, pool, "submit")
        report = SubmissionReport(pool=pool, mode=self.mode, total_units=len(batches))
        for batch in batches:
            try:
                signature = await self.gateway.send_transaction(
                    build_instructions(batch),
                    batch.compute_units,
                    lookup_tables,
                )
            except RebaserError as exc:
                report.failed_unit = batch.index
                report.error = exc
                log.error(
                    "batch %d (ids %d..%d) failed [%s]: %s",
                    batch.index, batch.first_id, batch.last_id, exc.kind.value, exc,
                )
                break
            report.succeeded_units += 1
            report.last_submitted_id = batch.last_id
            report.handles.append(signature)
            log.info(
                "batch %d/%d (ids %d..%d) confirmed: %s",
                batch.index + 1, len(batches), batch.first_id, batch.last_id, signature,
            )
        return report


class BundleSubmitter(Submitter):
    """Fixed-size sets of batches submitted all-or-nothing."""

    mode = "bundle"

    def __init__(self, gateway: LedgerGateway, bundle_size: int) -> None:
        super().__init__(gateway)
        if bundle_size < 1:
            raise ValueError(f"bundle_size must be positive, got {bundle_size}")
        self.bundle_size = bundle_size

    async def submit(
        self,
        pool: str,
        batches: Sequence[RebaseBatch],
        build_instructions: BuildInstructions,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
    ) -> SubmissionReport:
        log = PoolLogger(logger, pool, "submit")
        bundles = bundle(batches, self.bundle_size)
        report = SubmissionReport(pool=pool, mode=self.mode, total_units=len(bundles))
        for index, group in enumerate(bundles):
            planned = [
                PlannedTransaction(build_instructions(batch), batch.compute_units)
                for batch in group
            ]
            try:
                bundle_id = await self.gateway.send_atomic_bundle(planned, lookup_tables)
            except RebaserError as exc:
                report.failed_unit = index
                report.error = exc
                log.error(
                    "bundle %d (ids %d..%d) failed [%s]: %s",
                    index, group[0].first_id, group[-1].last_id, exc.kind.value, exc,
                )
                break
            report.succeeded_units += 1
            report.last_submitted_id = group[-1].last_id
            report.handles.append(bundle_id)
            log.info(
                "bundle %d/%d (%d transactions, ids %d..%d) landed: %s",
                index + 1, len(bundles), len(group), group[0].first_id, group[-1].last_id, bundle_id,
            )
        return report
