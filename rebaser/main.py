"""
REBASER — Main Entry Point

Wires all components together and runs one checkpoint controller per
configured pool until interrupted.
"""

from __future__ import annotations

import asyncio
import logging

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from rebaser.control_plane.batcher import BundleSubmitter, SequentialSubmitter, StakeBatcher, Submitter
from rebaser.control_plane.controller import CheckpointController
from rebaser.control_plane.lookup_tables import LookupTableManager
from rebaser.control_plane.registry import LookupTableRegistry
from rebaser.ledger.accounts import BoostAccounts
from rebaser.ledger.rpc_gateway import BundleRelay, RpcLedgerGateway, load_keypair
from rebaser.shared.logging import configure_logging
from rebaser.shared.settings import AgentSettings, get_luts_dir, load_settings


def setup_logging(level: str = "INFO", log_dir: str | None = None) -> None:
    configure_logging(level, log_dir)


logger = logging.getLogger("rebaser.main")


# Component initialization functions
def init_gateway(settings: AgentSettings, keypair: Keypair) -> RpcLedgerGateway:
    """Initialize the JSON-RPC gateway, with a bundle relay in bundle mode."""
    relay = None
    if settings.submission_mode == "bundle":
        relay = BundleRelay(
            settings.bundle_url,
            timeout_seconds=settings.rpc_timeout_seconds,
            confirm_timeout_seconds=settings.confirm_timeout_seconds,
            tip_account=Pubkey.from_string(settings.bundle_tip_account) if settings.bundle_tip_account else None,
            tip_lamports=settings.bundle_tip_lamports,
        )
        logger.info(f"Bundle relay enabled ({settings.bundle_url})")
    gateway = RpcLedgerGateway(
        settings.rpc_url,
        keypair,
        timeout_seconds=settings.rpc_timeout_seconds,
        confirm_timeout_seconds=settings.confirm_timeout_seconds,
        relay=relay,
    )
    logger.info(f"Ledger gateway initialized (signer={gateway.signer})")
    return gateway


def init_submitter(settings: AgentSettings, gateway: RpcLedgerGateway) -> Submitter:
    """Initialize the submission strategy."""
    if settings.submission_mode == "bundle":
        submitter: Submitter = BundleSubmitter(gateway, settings.bundle_size)
    else:
        submitter = SequentialSubmitter(gateway)
    logger.info(f"Submitter initialized (mode={submitter.mode})")
    return submitter


def build_controllers(settings: AgentSettings, keypair: Keypair) -> list[CheckpointController]:
    """Build one controller per configured mint, sharing gateway and registry."""
    gateway = init_gateway(settings, keypair)
    accounts = BoostAccounts(gateway, Pubkey.from_string(settings.boost_program_id))
    registry = LookupTableRegistry(get_luts_dir(settings))
    batcher = StakeBatcher(
        settings.rebase_chunk_size,
        compute_units_base=settings.compute_units_base,
        compute_units_per_rebase=settings.compute_units_per_rebase,
    )
    submitter = init_submitter(settings, gateway)
    lookup_tables = LookupTableManager(
        gateway=gateway,
        accounts=accounts,
        registry=registry,
        authority=gateway.signer,
        extend_chunk_size=settings.extend_chunk_size,
        close_chunk_size=settings.close_chunk_size,
        deactivation_wait_seconds=settings.deactivation_wait_seconds,
    )

    controllers = []
    for mint in settings.mints:
        controller = CheckpointController(
            mint=Pubkey.from_string(mint),
            gateway=gateway,
            accounts=accounts,
            lookup_tables=lookup_tables,
            batcher=batcher,
            submitter=submitter,
            signer=gateway.signer,
            interval_seconds=settings.interval_seconds,
            poll_cap_seconds=settings.poll_cap_seconds,
            backoff_seconds=settings.backoff_seconds,
        )
        logger.info(f"Controller ready for mint {mint} (pool={controller.pool})")
        controllers.append(controller)
    return controllers


async def run(settings: AgentSettings | None = None) -> None:
    """Run every pool controller until cancelled."""
    settings = settings or load_settings()
    setup_logging(settings.log_level, settings.log_dir)

    logger.info("=" * 60)
    logger.info("REBASER — Starting %d pool controllers", len(settings.mints))
    logger.info("=" * 60)

    keypair = load_keypair(settings.keypair_path)
    controllers = build_controllers(settings, keypair)
    try:
        await asyncio.gather(*(controller.run_forever() for controller in controllers))
    finally:
        logger.info("REBASER - Shutdown complete")


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
