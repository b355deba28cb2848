"""
Instruction builders for the boost program, compute budget and the address
lookup table program.
"""

from __future__ import annotations

import struct
from typing import Sequence

from solders.compute_budget import set_compute_unit_limit
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer

from rebaser.ledger.accounts import (
    LOOKUP_TABLE_PROGRAM_ID,
    checkpoint_address,
    lookup_table_address,
    pool_address,
)

# Boost program instruction tag for Rebase.
REBASE_DISCRIMINATOR = 6

# Address lookup table program instruction tags (u32, bincode enum).
CREATE_LOOKUP_TABLE = 0
EXTEND_LOOKUP_TABLE = 2
DEACTIVATE_LOOKUP_TABLE = 3
CLOSE_LOOKUP_TABLE = 4


# =============================================================================
# Boost Program
# =============================================================================
def rebase(program_id: Pubkey, signer: Pubkey, mint: Pubkey, stake: Pubkey) -> Instruction:
    """
    Rebase one stake account against the pool checkpoint.

    Passing Pubkey.default() as the stake advances the checkpoint when the
    pool has no participant work left.
    """
    boost = pool_address(mint, program_id)
    checkpoint = checkpoint_address(boost, program_id)
    return Instruction(
        program_id,
        bytes([REBASE_DISCRIMINATOR]),
        [
            AccountMeta(signer, is_signer=True, is_writable=True),
            AccountMeta(boost, is_signer=False, is_writable=True),
            AccountMeta(checkpoint, is_signer=False, is_writable=True),
            AccountMeta(stake, is_signer=False, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


# =============================================================================
# Compute Budget
# =============================================================================
def compute_budget_instructions(compute_units: int) -> list[Instruction]:
    return [set_compute_unit_limit(compute_units)]


# =============================================================================
# Address Lookup Tables
# =============================================================================
def create_lookup_table(authority: Pubkey, payer: Pubkey, recent_slot: int) -> tuple[Instruction, Pubkey]:
    table, bump = lookup_table_address(authority, recent_slot)
    data = struct.pack("<IQB", CREATE_LOOKUP_TABLE, recent_slot, bump)
    ix = Instruction(
        LOOKUP_TABLE_PROGRAM_ID,
        data,
        [
            AccountMeta(table, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )
    return ix, table


def extend_lookup_table(
    table: Pubkey,
    authority: Pubkey,
    payer: Pubkey,
    addresses: Sequence[Pubkey],
) -> Instruction:
    data = struct.pack("<IQ", EXTEND_LOOKUP_TABLE, len(addresses)) + b"".join(
        bytes(address) for address in addresses
    )
    return Instruction(
        LOOKUP_TABLE_PROGRAM_ID,
        data,
        [
            AccountMeta(table, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


def deactivate_lookup_table(table: Pubkey, authority: Pubkey) -> Instruction:
    return Instruction(
        LOOKUP_TABLE_PROGRAM_ID,
        struct.pack("<I", DEACTIVATE_LOOKUP_TABLE),
        [
            AccountMeta(table, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
        ],
    )


def close_lookup_table(table: Pubkey, authority: Pubkey, recipient: Pubkey) -> Instruction:
    return Instruction(
        LOOKUP_TABLE_PROGRAM_ID,
        struct.pack("<I", CLOSE_LOOKUP_TABLE),
        [
            AccountMeta(table, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
            AccountMeta(recipient, is_signer=False, is_writable=True),
        ],
    )


# =============================================================================
# Bundles
# =============================================================================
def bundle_tip(payer: Pubkey, tip_account: Pubkey, lamports: int) -> Instruction:
    return transfer(TransferParams(from_pubkey=payer, to_pubkey=tip_account, lamports=lamports))
