"""
REBASER lookup table registry.

Durable local record of which lookup tables may still be open per pool. The
ledger offers no owner-indexed enumeration of lookup tables, so this file is
the only way to find (and eventually close) tables created by earlier runs.

One file per pool at `{storage_root}/{pool}`; each record is the table's
32 raw address bytes followed by a newline.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from solders.pubkey import Pubkey

from rebaser.shared.errors import MalformedPersistedRecord
from rebaser.shared.logging import REGISTRY_LOGGER

logger = logging.getLogger(REGISTRY_LOGGER)

ADDRESS_SIZE = 32
RECORD_DELIMITER = b"\n"
RECORD_SIZE = ADDRESS_SIZE + len(RECORD_DELIMITER)


@dataclass(frozen=True)
class RegistryEntry:
    pool: Pubkey
    lookup_table: Pubkey


class LookupTableRegistry:
    """File-backed registry of open lookup tables, keyed by pool."""

    def __init__(self, storage_root: str | Path) -> None:
        self.storage_root = Path(storage_root)
        self.storage_root.mkdir(parents=True, exist_ok=True)

    def path_for(self, pool: Pubkey) -> Path:
        return self.storage_root / str(pool)

    def append(self, pool: Pubkey, lookup_table: Pubkey) -> RegistryEntry:
        """
        Durably record one table before anything else touches it.

        A record torn by a crash mid-append leaves the file without a final
        delimiter. It is terminated first so the new record gets its own frame.
        """
        path = self.path_for(pool)
        with path.open("a+b") as f:
            f.seek(0, os.SEEK_END)
            record = bytes(lookup_table) + RECORD_DELIMITER
            if f.tell() > 0:
                f.seek(-1, os.SEEK_END)
                if f.read(1) != RECORD_DELIMITER:
                    logger.warning("%s -- terminating torn registry record before append", pool)
                    record = RECORD_DELIMITER + record
            f.write(record)
            f.flush()
            os.fsync(f.fileno())
        logger.info("%s -- registered lookup table %s", pool, lookup_table)
        return RegistryEntry(pool=pool, lookup_table=lookup_table)

    def read(self, pool: Pubkey) -> list[RegistryEntry]:
        """
        Parse every well-formed record for the pool, in write order.

        Records are read as fixed frames. A frame that does not end with the
        delimiter is logged as malformed and the reader resynchronises after
        the next delimiter, so later valid records are still returned.
        """
        path = self.path_for(pool)
        if not path.exists():
            return []

        data = path.read_bytes()
        entries: list[RegistryEntry] = []
        offset = 0
        while offset < len(data):
            end = offset + ADDRESS_SIZE
            if end < len(data) and data[end:end + 1] == RECORD_DELIMITER:
                entries.append(RegistryEntry(pool=pool, lookup_table=Pubkey(data[offset:end])))
                offset = end + 1
                continue

            newline = data.find(RECORD_DELIMITER, offset)
            next_offset = len(data) if newline == -1 else newline + 1
            error = MalformedPersistedRecord(
                path,
                offset,
                next_offset - offset - (0 if newline == -1 else 1),
                pool=str(pool),
                phase="registry_read",
            )
            logger.error("%s -- %s", pool, error)
            offset = next_offset

        logger.debug("%s -- parsed %d registered lookup tables", pool, len(entries))
        return entries

    def tables(self, pool: Pubkey) -> list[Pubkey]:
        return [entry.lookup_table for entry in self.read(pool)]

    def retain(self, pool: Pubkey, lookup_tables: Iterable[Pubkey]) -> None:
        """Atomically rewrite the pool's records with only the given tables."""
        keep = list(lookup_tables)
        if not keep:
            self.clear(pool)
            return
        path = self.path_for(pool)
        tmp_path = path.with_name(path.name + ".tmp")
        with tmp_path.open("wb") as f:
            for table in keep:
                f.write(bytes(table) + RECORD_DELIMITER)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        logger.info("%s -- registry now holds %d lookup tables", pool, len(keep))

    def clear(self, pool: Pubkey) -> None:
        """Truncate the pool's records once its tables are closed."""
        path = self.path_for(pool)
        if path.exists():
            with path.open("wb") as f:
                f.flush()
                os.fsync(f.fileno())
        logger.info("%s -- registry cleared", pool)
