"""
JSON-RPC ledger gateway for REBASER.

Reads accounts and submits signed v0 transactions over HTTP JSON-RPC, and
delegates atomic multi-transaction submission to a block engine bundle relay.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import struct
import time
from pathlib import Path
from typing import Any, Sequence

import aiohttp
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from rebaser.ledger.gateway import LedgerClock, LedgerGateway, PlannedTransaction
from rebaser.ledger.instructions import bundle_tip, compute_budget_instructions
from rebaser.shared.errors import (
    AccountNotFoundError,
    BundleUnconfirmedError,
    ConfigurationError,
    InvalidBundleError,
    ResourceRejected,
    TransactionRejectedError,
    TransportFailure,
)
from rebaser.shared.logging import LEDGER_LOGGER
from rebaser.shared.settings import MAX_TRANSACTION_SIZE, MAX_TRANSACTIONS_PER_BUNDLE

logger = logging.getLogger(LEDGER_LOGGER)

CLOCK_SYSVAR = Pubkey.from_string("SysvarC1ock11111111111111111111111111111111")
CLOCK_LAYOUT = struct.Struct("<QqQQq")

COMMITMENT = "confirmed"
CONFIRMED_STATUSES = {"confirmed", "finalized"}

RESOURCE_REJECTION_MARKERS = (
    "too large",
    "ComputationalBudgetExceeded",
    "exceeded CUs meter",
    "TooManyAccountLocks",
    "MaxLoadedAccountsDataSizeExceeded",
)


class JsonRpcError(TransportFailure):
    """Error object returned by a JSON-RPC endpoint."""

    def __init__(self, method: str, code: int, message: str, data: Any = None):
        self.method = method
        self.code = code
        self.rpc_message = message
        self.data = data
        super().__init__(f"{method} failed ({code}): {message}", method=method, code=code)


def is_resource_rejection(text: str) -> bool:
    return any(marker.lower() in text.lower() for marker in RESOURCE_REJECTION_MARKERS)


def load_keypair(path: str) -> Keypair:
    """Load a keypair from a JSON file holding a 64-int array."""
    try:
        raw = json.loads(Path(path).read_text())
        return Keypair.from_bytes(bytes(raw))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Unable to read keypair from {path}: {exc}", path=path) from exc


async def _json_rpc(url: str, method: str, params: list[Any], timeout_seconds: float) -> Any:
    payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload) as resp:
                resp.raise_for_status()
                body = await resp.json()
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise TransportFailure(f"{method} request failed: {exc}", method=method) from exc

    error = body.get("error")
    if error:
        raise JsonRpcError(
            method,
            int(error.get("code", 0)),
            str(error.get("message", "")),
            error.get("data"),
        )
    return body.get("result")


class BundleRelay:
    """Block engine client for all-or-nothing bundle submission."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 30.0,
        confirm_timeout_seconds: float = 60.0,
        confirm_poll_seconds: float = 2.0,
        tip_account: Pubkey | None = None,
        tip_lamports: int = 0,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self.confirm_poll_seconds = confirm_poll_seconds
        self.tip_account = tip_account
        self.tip_lamports = tip_lamports

    def tip_instruction(self, payer: Pubkey) -> Instruction | None:
        if self.tip_account is None or self.tip_lamports <= 0:
            return None
        return bundle_tip(payer, self.tip_account, self.tip_lamports)

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        return await _json_rpc(self.url, method, params, self.timeout_seconds)

    async def send_bundle(self, encoded_transactions: Sequence[str]) -> str:
        if not encoded_transactions:
            raise InvalidBundleError("Empty bundle")
        if len(encoded_transactions) > MAX_TRANSACTIONS_PER_BUNDLE:
            raise InvalidBundleError(
                f"Too many transactions in bundle: {len(encoded_transactions)} > {MAX_TRANSACTIONS_PER_BUNDLE}",
                size=len(encoded_transactions),
            )
        bundle_id = await self._rpc_call(
            "sendBundle",
            [list(encoded_transactions), {"encoding": "base64"}],
        )
        return str(bundle_id)

    async def confirm_bundle(self, bundle_id: str) -> None:
        deadline = time.monotonic() + self.confirm_timeout_seconds
        while True:
            result = await self._rpc_call("getBundleStatuses", [[bundle_id]])
            statuses = (result or {}).get("value") or []
            status = statuses[0] if statuses else None
            if status:
                err = status.get("err")
                if err and "Ok" not in err:
                    raise TransactionRejectedError(
                        f"Bundle {bundle_id} failed: {err}", bundle_id=bundle_id
                    )
                if status.get("confirmation_status") in CONFIRMED_STATUSES:
                    return
            if time.monotonic() >= deadline:
                raise BundleUnconfirmedError(bundle_id)
            await asyncio.sleep(self.confirm_poll_seconds)


class RpcLedgerGateway(LedgerGateway):
    """HTTP JSON-RPC implementation of the ledger gateway."""

    def __init__(
        self,
        rpc_url: str,
        keypair: Keypair,
        *,
        timeout_seconds: float = 30.0,
        confirm_timeout_seconds: float = 60.0,
        confirm_poll_seconds: float = 1.0,
        relay: BundleRelay | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.keypair = keypair
        self.timeout_seconds = timeout_seconds
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self.confirm_poll_seconds = confirm_poll_seconds
        self.relay = relay

    @property
    def signer(self) -> Pubkey:
        return self.keypair.pubkey()

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        return await _json_rpc(self.rpc_url, method, params, self.timeout_seconds)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_account(self, address: Pubkey) -> bytes:
        result = await self._rpc_call(
            "getAccountInfo",
            [str(address), {"encoding": "base64", "commitment": COMMITMENT}],
        )
        value = (result or {}).get("value")
        if value is None:
            raise AccountNotFoundError(address)
        return base64.b64decode(value["data"][0])

    async def get_program_accounts(
        self,
        program_id: Pubkey,
        type_discriminator: int,
        owner_filter: tuple[int, bytes],
    ) -> list[tuple[Pubkey, bytes]]:
        offset, needle = owner_filter
        filters = [
            {"memcmp": {"offset": 0, "bytes": base64.b64encode(bytes([type_discriminator])).decode(), "encoding": "base64"}},
            {"memcmp": {"offset": offset, "bytes": base64.b64encode(needle).decode(), "encoding": "base64"}},
        ]
        result = await self._rpc_call(
            "getProgramAccounts",
            [str(program_id), {"encoding": "base64", "commitment": COMMITMENT, "filters": filters}],
        )
        accounts = []
        for item in result or []:
            address = Pubkey.from_string(item["pubkey"])
            data = base64.b64decode(item["account"]["data"][0])
            accounts.append((address, data))
        return accounts

    async def get_clock(self) -> LedgerClock:
        data = await self.get_account(CLOCK_SYSVAR)
        slot, _epoch_start, _epoch, _leader_epoch, unix_timestamp = CLOCK_LAYOUT.unpack_from(data, 0)
        return LedgerClock(unix_timestamp=unix_timestamp, slot=slot)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def _latest_blockhash(self) -> Hash:
        result = await self._rpc_call("getLatestBlockhash", [{"commitment": COMMITMENT}])
        return Hash.from_string(result["value"]["blockhash"])

    def _compile(
        self,
        instructions: Sequence[Instruction],
        lookup_tables: Sequence[AddressLookupTableAccount],
        blockhash: Hash,
    ) -> VersionedTransaction:
        message = MessageV0.try_compile(
            self.signer,
            list(instructions),
            list(lookup_tables),
            blockhash,
        )
        tx = VersionedTransaction(message, [self.keypair])
        size = len(bytes(tx))
        if size > MAX_TRANSACTION_SIZE:
            raise ResourceRejected(
                f"Transaction is {size} bytes, limit is {MAX_TRANSACTION_SIZE}",
                size=size,
                instructions=len(instructions),
            )
        return tx

    async def send_transaction(
        self,
        instructions: Sequence[Instruction],
        compute_units: int,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
    ) -> str:
        ixs = compute_budget_instructions(compute_units) + list(instructions)
        tx = self._compile(ixs, lookup_tables, await self._latest_blockhash())
        encoded = base64.b64encode(bytes(tx)).decode()
        try:
            signature = await self._rpc_call(
                "sendTransaction",
                [encoded, {"encoding": "base64", "preflightCommitment": COMMITMENT}],
            )
        except JsonRpcError as exc:
            detail = f"{exc.rpc_message} {exc.data or ''}"
            if is_resource_rejection(detail):
                raise ResourceRejected(f"Transaction rejected: {exc.rpc_message}", code=exc.code) from exc
            raise TransactionRejectedError(f"Transaction rejected: {exc.rpc_message}", code=exc.code) from exc
        await self._confirm(str(signature))
        return str(signature)

    async def _confirm(self, signature: str) -> None:
        deadline = time.monotonic() + self.confirm_timeout_seconds
        while True:
            result = await self._rpc_call("getSignatureStatuses", [[signature]])
            statuses = (result or {}).get("value") or [None]
            status = statuses[0]
            if status:
                err = status.get("err")
                if err:
                    text = json.dumps(err)
                    if is_resource_rejection(text):
                        raise ResourceRejected(f"Transaction {signature} failed: {text}", signature=signature)
                    raise TransactionRejectedError(f"Transaction {signature} failed: {text}", signature=signature)
                if status.get("confirmationStatus") in CONFIRMED_STATUSES:
                    return
            if time.monotonic() >= deadline:
                raise TransportFailure(f"Transaction {signature} was not confirmed", signature=signature)
            await asyncio.sleep(self.confirm_poll_seconds)

    async def send_atomic_bundle(
        self,
        transactions: Sequence[PlannedTransaction],
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
    ) -> str:
        if self.relay is None:
            raise ConfigurationError("No bundle relay configured")
        if not transactions:
            raise InvalidBundleError("Empty bundle")
        blockhash = await self._latest_blockhash()
        tip = self.relay.tip_instruction(self.signer)
        encoded = []
        for index, planned in enumerate(transactions):
            ixs = compute_budget_instructions(planned.compute_units) + list(planned.instructions)
            if tip is not None and index == len(transactions) - 1:
                ixs.append(tip)
            tx = self._compile(ixs, lookup_tables, blockhash)
            encoded.append(base64.b64encode(bytes(tx)).decode())
        bundle_id = await self.relay.send_bundle(encoded)
        logger.info("Bundle %s submitted with %d transactions", bundle_id, len(encoded))
        await self.relay.confirm_bundle(bundle_id)
        return bundle_id
