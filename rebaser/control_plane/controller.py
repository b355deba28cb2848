"""
REBASER checkpoint controller.

Per-pool state machine that advances the on-ledger checkpoint:

  COLD_START -> AWAIT_INTERVAL -> RECONCILE -> SUBMIT -+-> RECONCILE   (participant pass sent)
                                                       +-> ROTATE -> AWAIT_INTERVAL   (checkpoint finished)

  any failure -> BACKOFF -> resume state

The ledger cursor is the only record of progress. RECONCILE recomputes the
remaining participants from it on every entry, so a restart or a failed
batch resumes exactly at the cursor. Rotation runs once per finished
checkpoint. Incomplete lookup table passes are logged and the cycle goes on
with the tables that exist; only failures the controller cannot work around
turn into a BACKOFF.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from rebaser.control_plane.batcher import RebaseBatch, StakeBatcher, Submitter
from rebaser.control_plane.lookup_tables import LookupTableManager, LookupTableReport
from rebaser.ledger.accounts import BoostAccounts, Checkpoint, Participant
from rebaser.ledger.gateway import LedgerClock, LedgerGateway
from rebaser.ledger.instructions import rebase
from rebaser.shared.errors import IntervalNotElapsed, PartialBatchFailure, RebaserError
from rebaser.shared.logging import CONTROLLER_LOGGER, PoolLogger
from rebaser.shared.utils import format_duration

logger = logging.getLogger(CONTROLLER_LOGGER)


class ControllerState(str, Enum):
    """Checkpoint controller states."""
    COLD_START = "cold_start"
    AWAIT_INTERVAL = "await_interval"
    RECONCILE = "reconcile"
    SUBMIT = "submit"
    ROTATE = "rotate"
    BACKOFF = "backoff"


# Where to resume after a failure in each state.
RESUME_AFTER_FAILURE: dict[ControllerState, ControllerState] = {
    ControllerState.COLD_START: ControllerState.COLD_START,
    ControllerState.AWAIT_INTERVAL: ControllerState.AWAIT_INTERVAL,
    ControllerState.RECONCILE: ControllerState.AWAIT_INTERVAL,
    ControllerState.SUBMIT: ControllerState.AWAIT_INTERVAL,
    ControllerState.ROTATE: ControllerState.ROTATE,
    ControllerState.BACKOFF: ControllerState.AWAIT_INTERVAL,
}


class CheckpointController:
    """Drives one pool's checkpoint forever."""

    def __init__(
        self,
        *,
        mint: Pubkey,
        gateway: LedgerGateway,
        accounts: BoostAccounts,
        lookup_tables: LookupTableManager,
        batcher: StakeBatcher,
        submitter: Submitter,
        signer: Pubkey,
        interval_seconds: int = 3600,
        poll_cap_seconds: float = 300.0,
        backoff_seconds: float = 15.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.mint = mint
        self.gateway = gateway
        self.accounts = accounts
        self.lookup_tables = lookup_tables
        self.batcher = batcher
        self.submitter = submitter
        self.signer = signer
        self.interval_seconds = interval_seconds
        self.poll_cap_seconds = poll_cap_seconds
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

        self.pool = accounts.pool_address(mint)
        self.checkpoint_address = accounts.checkpoint_address(self.pool)
        self.log = PoolLogger(logger, self.pool)

        self.state = ControllerState.COLD_START
        self.checkpoint: Checkpoint | None = None
        self.observed_rebase_time: int | None = None
        self.remaining: list[Participant] = []
        self.wait_seconds = 0.0
        self.resume_state = ControllerState.COLD_START
        self._tables: list[AddressLookupTableAccount] = []
        self._tables_synced = False
        self._retiring: list[Pubkey] | None = None

        self._handlers: dict[ControllerState, Callable[[], Awaitable[ControllerState]]] = {
            ControllerState.COLD_START: self._cold_start,
            ControllerState.AWAIT_INTERVAL: self._await_interval,
            ControllerState.RECONCILE: self._reconcile,
            ControllerState.SUBMIT: self._submit,
            ControllerState.ROTATE: self._rotate,
            ControllerState.BACKOFF: self._backoff,
        }
        self._task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self.run_forever(), name=f"rebaser-controller-{self.pool}")
        self.log.info("checkpoint controller started (mint=%s)", self.mint)

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.log.info("checkpoint controller stopped")

    async def run_forever(self) -> None:
        while not self._stop.is_set():
            try:
                await self.step()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.log.for_phase(self.state.value).exception("unexpected controller error")
                self.state = self._enter_backoff(RESUME_AFTER_FAILURE[self.state], self.backoff_seconds)

    async def step(self) -> ControllerState:
        """Run the current state once and move to the next one."""
        phase = self.state
        try:
            next_state = await self._handlers[phase]()
        except RebaserError as exc:
            exc.with_context(pool=str(self.pool), phase=phase.value)
            self.log.for_phase(phase.value).error(
                "failed [%s]: %s", exc.kind.value, exc, extra={"error": exc.to_dict()}
            )
            next_state = self._enter_backoff(RESUME_AFTER_FAILURE[phase], self.backoff_seconds)
        self.state = next_state
        return next_state

    def _enter_backoff(self, resume: ControllerState, wait_seconds: float) -> ControllerState:
        self.resume_state = resume
        self.wait_seconds = wait_seconds
        return ControllerState.BACKOFF

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------
    async def _cold_start(self) -> ControllerState:
        log = self.log.for_phase(ControllerState.COLD_START.value)
        log.info("checkpoint account %s", self.checkpoint_address)
        checkpoint = await self.accounts.fetch_checkpoint(self.pool)
        participants = await self.accounts.fetch_participants(self.pool)
        await self._sync_tables(participants, ControllerState.COLD_START)
        self.checkpoint = checkpoint
        self.observed_rebase_time = checkpoint.last_rebase_time
        log.info(
            "resuming at cursor %d of %d participants (last rebase at %d)",
            checkpoint.cursor, len(participants), checkpoint.last_rebase_time,
        )
        return ControllerState.AWAIT_INTERVAL

    def _check_interval(self, clock: LedgerClock, checkpoint: Checkpoint) -> None:
        elapsed = clock.unix_timestamp - checkpoint.last_rebase_time
        if elapsed < self.interval_seconds:
            raise IntervalNotElapsed(
                self.interval_seconds - elapsed,
                pool=str(self.pool),
                phase=ControllerState.AWAIT_INTERVAL.value,
            )

    async def _await_interval(self) -> ControllerState:
        clock = await self.gateway.get_clock()
        self.checkpoint = await self.accounts.fetch_checkpoint(self.pool)
        try:
            self._check_interval(clock, self.checkpoint)
        except IntervalNotElapsed as signal:
            wait = min(signal.remaining_seconds, self.poll_cap_seconds)
            self.log.for_phase(ControllerState.AWAIT_INTERVAL.value).info(
                "not enough time has passed since last checkpoint. Wait %d more seconds (sleeping %s).",
                signal.remaining_seconds, format_duration(wait),
            )
            return self._enter_backoff(ControllerState.AWAIT_INTERVAL, wait)
        return ControllerState.RECONCILE

    async def _reconcile(self) -> ControllerState:
        log = self.log.for_phase(ControllerState.RECONCILE.value)
        checkpoint = await self.accounts.fetch_checkpoint(self.pool)
        participants = await self.accounts.fetch_participants(self.pool)

        if checkpoint.last_rebase_time != self.observed_rebase_time:
            log.info("new interval observed (last rebase at %d), syncing lookup tables", checkpoint.last_rebase_time)
            await self._sync_tables(participants, ControllerState.RECONCILE)
            self.observed_rebase_time = checkpoint.last_rebase_time
        elif not self._tables_synced:
            log.info("retrying incomplete lookup table sync")
            await self._sync_tables(participants, ControllerState.RECONCILE)

        self.checkpoint = checkpoint
        self.remaining = sorted(
            (p for p in participants if p.id >= checkpoint.cursor),
            key=lambda p: p.id,
        )
        tables = await self.lookup_tables.load_tables(self.pool)
        self._tables = [table.to_account() for table in tables]
        log.info(
            "%d of %d participants remaining from cursor %d (%d lookup tables)",
            len(self.remaining), len(participants), checkpoint.cursor, len(self._tables),
        )
        return ControllerState.SUBMIT

    async def _submit(self) -> ControllerState:
        log = self.log.for_phase(ControllerState.SUBMIT.value)
        if not self.remaining:
            ix = rebase(self.accounts.program_id, self.signer, self.mint, Pubkey.default())
            signature = await self.gateway.send_transaction([ix], self.batcher.compute_units(1))
            log.info("no participant work left, default rebase submitted: %s", signature)
            self._retiring = None
            return ControllerState.ROTATE

        batches = self.batcher.partition(self.remaining)
        report = await self.submitter.submit(
            str(self.pool),
            batches,
            self._build_instructions,
            self._tables,
        )
        report.raise_for_failure()
        log.info(
            "submitted %d participants in %d %s units",
            len(self.remaining), report.total_units, report.mode,
        )
        self.remaining = []
        return ControllerState.RECONCILE

    def _build_instructions(self, batch: RebaseBatch) -> list[Instruction]:
        return [
            rebase(self.accounts.program_id, self.signer, self.mint, participant.address)
            for participant in batch.participants
        ]

    async def _rotate(self) -> ControllerState:
        if self._retiring is None:
            self._retiring = self.lookup_tables.registered(self.pool)
        report = await self.lookup_tables.rotate(self.pool, self._retiring)
        self._retiring = None
        if self._accept_table_report(report, ControllerState.ROTATE):
            self.log.for_phase(ControllerState.ROTATE.value).info(
                "rotation complete: closed %d, created %d lookup tables",
                len(report.closed), len(report.created),
            )
        return ControllerState.AWAIT_INTERVAL

    # ------------------------------------------------------------------
    # Lookup tables
    # ------------------------------------------------------------------
    async def _sync_tables(self, participants: list[Participant], phase: ControllerState) -> None:
        report = await self.lookup_tables.sync(self.pool, participants)
        self._tables_synced = self._accept_table_report(report, phase)

    def _accept_table_report(self, report: LookupTableReport, phase: ControllerState) -> bool:
        """Log an incomplete lookup table pass and return whether the pass was clean."""
        try:
            report.raise_for_failure()
        except PartialBatchFailure as exc:
            exc.with_context(pool=str(self.pool), phase=phase.value)
            self.log.for_phase(phase.value).warning(
                "continuing with incomplete lookup tables [%s]: %s",
                exc.kind.value, exc, extra={"error": exc.to_dict()},
            )
            return False
        return True

    async def _backoff(self) -> ControllerState:
        await self._sleep(self.wait_seconds)
        return self.resume_state
