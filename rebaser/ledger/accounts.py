"""
Boost program account layouts and address derivation.

All program accounts start with an 8-byte discriminator whose first byte is
the account type. Integers are little-endian.

Checkpoint (80 bytes):
    boost: Pubkey | current_id: u64 | total_pending_deposits: u64 |
    total_rewards: u64 | total_stakers: u64 | ts: i64

Stake (112 bytes):
    authority: Pubkey | balance: u64 | balance_pending: u64 |
    boost: Pubkey (offset 56) | id: u64 | last_deposit_at: i64 | rewards: u64

Address lookup table (56-byte header, then 32-byte addresses):
    type: u32 | deactivation_slot: u64 | last_extended_slot: u64 |
    last_extended_slot_start_index: u8 | authority: Option<Pubkey> | padding: u16
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.pubkey import Pubkey

from rebaser.ledger.gateway import LedgerGateway
from rebaser.shared.errors import AccountNotFoundError
from rebaser.shared.logging import LEDGER_LOGGER

logger = logging.getLogger(LEDGER_LOGGER)


# =============================================================================
# Constants
# =============================================================================
BOOST_SEED = b"boost"
CHECKPOINT_SEED = b"checkpoint"

BOOST_DISCRIMINATOR = 100
CHECKPOINT_DISCRIMINATOR = 101
STAKE_DISCRIMINATOR = 103

DISCRIMINATOR_SIZE = 8
ADDRESS_SIZE = 32
STAKE_BOOST_OFFSET = DISCRIMINATOR_SIZE + 32 + 8 + 8

CHECKPOINT_LAYOUT = struct.Struct("<32sQQQQq")
STAKE_LAYOUT = struct.Struct("<32sQQ32sQqQ")

LOOKUP_TABLE_PROGRAM_ID = Pubkey.from_string("AddressLookupTab1e1111111111111111111111111")
LOOKUP_TABLE_META_SIZE = 56
LOOKUP_TABLE_HEADER = struct.Struct("<IQQB")
LOOKUP_TABLE_STATE_TAG = 1
ACTIVE_DEACTIVATION_SLOT = 2**64 - 1


class AccountDecodeError(ValueError):
    """Raised when account bytes do not match the expected layout."""


# =============================================================================
# Models
# =============================================================================
@dataclass(frozen=True)
class Checkpoint:
    address: Pubkey
    pool: Pubkey
    cursor: int
    total_stakers: int
    last_rebase_time: int


@dataclass(frozen=True)
class Participant:
    address: Pubkey
    pool: Pubkey
    id: int
    authority: Pubkey
    balance: int


@dataclass(frozen=True)
class LookupTable:
    """Decoded address lookup table."""

    address: Pubkey
    addresses: tuple[Pubkey, ...]
    deactivation_slot: int = ACTIVE_DEACTIVATION_SLOT
    authority: Pubkey | None = None

    @property
    def is_active(self) -> bool:
        return self.deactivation_slot == ACTIVE_DEACTIVATION_SLOT

    def capacity_remaining(self, max_addresses: int = 256) -> int:
        return max(0, max_addresses - len(self.addresses))

    def is_closeable(self, current_slot: int, cooldown_slots: int) -> bool:
        """True once the deactivation cooldown has fully elapsed."""
        if self.is_active:
            return False
        return current_slot > self.deactivation_slot + cooldown_slots

    def to_account(self) -> AddressLookupTableAccount:
        return AddressLookupTableAccount(key=self.address, addresses=list(self.addresses))


# =============================================================================
# Derivation
# =============================================================================
def pool_address(mint: Pubkey, program_id: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address([BOOST_SEED, bytes(mint)], program_id)
    return address


def checkpoint_address(pool: Pubkey, program_id: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address([CHECKPOINT_SEED, bytes(pool)], program_id)
    return address


def lookup_table_address(authority: Pubkey, recent_slot: int) -> tuple[Pubkey, int]:
    """Table address and bump seed for a table created at `recent_slot`."""
    return Pubkey.find_program_address(
        [bytes(authority), recent_slot.to_bytes(8, "little")],
        LOOKUP_TABLE_PROGRAM_ID,
    )


# =============================================================================
# Decoding
# =============================================================================
def _check_discriminator(data: bytes, expected: int, size: int, name: str) -> None:
    if len(data) < DISCRIMINATOR_SIZE + size:
        raise AccountDecodeError(f"{name} account too short: {len(data)} bytes")
    if data[0] != expected:
        raise AccountDecodeError(f"{name} discriminator mismatch: {data[0]} != {expected}")


def decode_checkpoint(address: Pubkey, data: bytes) -> Checkpoint:
    _check_discriminator(data, CHECKPOINT_DISCRIMINATOR, CHECKPOINT_LAYOUT.size, "checkpoint")
    boost, current_id, _pending, _rewards, total_stakers, ts = CHECKPOINT_LAYOUT.unpack_from(
        data, DISCRIMINATOR_SIZE
    )
    return Checkpoint(
        address=address,
        pool=Pubkey(boost),
        cursor=current_id,
        total_stakers=total_stakers,
        last_rebase_time=ts,
    )


def decode_stake(address: Pubkey, data: bytes) -> Participant:
    _check_discriminator(data, STAKE_DISCRIMINATOR, STAKE_LAYOUT.size, "stake")
    authority, balance, _pending, boost, stake_id, _last_deposit, _rewards = STAKE_LAYOUT.unpack_from(
        data, DISCRIMINATOR_SIZE
    )
    return Participant(
        address=address,
        pool=Pubkey(boost),
        id=stake_id,
        authority=Pubkey(authority),
        balance=balance,
    )


def decode_lookup_table(address: Pubkey, data: bytes) -> LookupTable:
    if len(data) < LOOKUP_TABLE_META_SIZE:
        raise AccountDecodeError(f"lookup table account too short: {len(data)} bytes")
    tag, deactivation_slot, _last_extended, _start_index = LOOKUP_TABLE_HEADER.unpack_from(data, 0)
    if tag != LOOKUP_TABLE_STATE_TAG:
        raise AccountDecodeError(f"lookup table not initialized (tag {tag})")
    authority = None
    if data[LOOKUP_TABLE_HEADER.size] == 1:
        start = LOOKUP_TABLE_HEADER.size + 1
        authority = Pubkey(data[start:start + ADDRESS_SIZE])
    body = data[LOOKUP_TABLE_META_SIZE:]
    if len(body) % ADDRESS_SIZE:
        raise AccountDecodeError(f"lookup table body not a multiple of {ADDRESS_SIZE} bytes")
    addresses = tuple(
        Pubkey(body[i:i + ADDRESS_SIZE]) for i in range(0, len(body), ADDRESS_SIZE)
    )
    return LookupTable(
        address=address,
        addresses=addresses,
        deactivation_slot=deactivation_slot,
        authority=authority,
    )


# =============================================================================
# Reader
# =============================================================================
class BoostAccounts:
    """Typed reads of boost program and lookup table accounts."""

    def __init__(self, gateway: LedgerGateway, program_id: Pubkey) -> None:
        self.gateway = gateway
        self.program_id = program_id

    def pool_address(self, mint: Pubkey) -> Pubkey:
        return pool_address(mint, self.program_id)

    def checkpoint_address(self, pool: Pubkey) -> Pubkey:
        return checkpoint_address(pool, self.program_id)

    async def fetch_checkpoint(self, pool: Pubkey) -> Checkpoint:
        address = self.checkpoint_address(pool)
        data = await self.gateway.get_account(address)
        return decode_checkpoint(address, data)

    async def fetch_participants(self, pool: Pubkey) -> list[Participant]:
        """All stake accounts of the pool, sorted ascending by id."""
        raw = await self.gateway.get_program_accounts(
            self.program_id,
            STAKE_DISCRIMINATOR,
            (STAKE_BOOST_OFFSET, bytes(pool)),
        )
        participants = []
        for address, data in raw:
            try:
                participants.append(decode_stake(address, data))
            except AccountDecodeError as exc:
                logger.warning("%s -- skipping undecodable stake account %s: %s", pool, address, exc)
        participants.sort(key=lambda p: p.id)
        return participants

    async def fetch_lookup_table(self, address: Pubkey) -> LookupTable | None:
        """Decoded table, or None once the table has been closed."""
        try:
            data = await self.gateway.get_account(address)
        except AccountNotFoundError:
            return None
        return decode_lookup_table(address, data)
