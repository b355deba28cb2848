"""
REBASER — Shared Settings

Central configuration for the checkpoint agent. Values are read from the
environment (and an optional .env file) once at startup into an AgentSettings
instance that is passed to every component by reference.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError, MissingEnvironmentVariableError


# =============================================================================
# Project Identity
# =============================================================================
PROJECT_NAME: str = "REBASER"
VERSION: str = "0.1.0"


# =============================================================================
# Ledger Limits
# =============================================================================
# Serialized transaction size ceiling (bytes).
MAX_TRANSACTION_SIZE: int = 1232
# Compute units a single transaction may request.
MAX_COMPUTE_UNITS: int = 1_400_000
# Account locks per transaction, minus the accounts every rebase shares
# (signer, boost, checkpoint, programs).
MAX_REBASES_PER_TRANSACTION: int = 48
# Lookup table capacity and per-extend address ceiling.
MAX_ADDRESSES_PER_LOOKUP_TABLE: int = 256
MAX_ADDRESSES_PER_EXTEND: int = 30
MAX_CLOSES_PER_TRANSACTION: int = 20
# Slots a deactivated lookup table must age before it can be closed.
LOOKUP_TABLE_COOLDOWN_SLOTS: int = 512
# Block engine bundle ceiling.
MAX_TRANSACTIONS_PER_BUNDLE: int = 5


# =============================================================================
# Clusters
# =============================================================================
CLUSTER_URLS: dict[str, str] = {
    "mainnet": "https://mainnet.helius-rpc.com/?api-key={api_key}",
    "mainnet-staked": "https://staked.helius-rpc.com/?api-key={api_key}",
    "devnet": "https://devnet.helius-rpc.com/?api-key={api_key}",
}

SUBMISSION_MODES = ("sequential", "bundle")


@dataclass(frozen=True)
class AgentSettings:
    """Validated agent configuration."""

    # Pools
    mints: tuple[str, ...]
    boost_program_id: str
    keypair_path: str

    # Network
    rpc_url: str
    rpc_timeout_seconds: float = 30.0
    confirm_timeout_seconds: float = 60.0

    # Storage
    luts_path: str = "data/luts"

    # Timing
    interval_seconds: int = 3600
    poll_cap_seconds: float = 300.0
    backoff_seconds: float = 15.0
    deactivation_wait_seconds: float = 240.0

    # Submission
    submission_mode: str = "sequential"
    bundle_url: Optional[str] = None
    bundle_size: int = MAX_TRANSACTIONS_PER_BUNDLE
    bundle_tip_lamports: int = 0
    bundle_tip_account: Optional[str] = None
    rebase_chunk_size: int = 10
    compute_units_base: int = 20_000
    compute_units_per_rebase: int = 30_000

    # Lookup tables
    extend_chunk_size: int = 26
    close_chunk_size: int = 10

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    def validate(self) -> "AgentSettings":
        """Check tuning constants against ledger limits. Returns self."""
        if not self.mints:
            raise ConfigurationError("At least one mint must be configured")
        if self.submission_mode not in SUBMISSION_MODES:
            raise ConfigurationError(
                f"Invalid submission mode {self.submission_mode!r}; expected one of {SUBMISSION_MODES}"
            )
        if self.submission_mode == "bundle" and not self.bundle_url:
            raise ConfigurationError("Bundle submission requires REBASER_BUNDLE_URL")
        if not 1 <= self.bundle_size <= MAX_TRANSACTIONS_PER_BUNDLE:
            raise ConfigurationError(
                f"Bundle size {self.bundle_size} outside 1..{MAX_TRANSACTIONS_PER_BUNDLE}"
            )
        if self.bundle_tip_lamports > 0 and not self.bundle_tip_account:
            raise ConfigurationError("Bundle tip requires REBASER_BUNDLE_TIP_ACCOUNT")
        if not 1 <= self.rebase_chunk_size <= MAX_REBASES_PER_TRANSACTION:
            raise ConfigurationError(
                f"Rebase chunk size {self.rebase_chunk_size} outside 1..{MAX_REBASES_PER_TRANSACTION}"
            )
        budget = self.compute_units_base + self.compute_units_per_rebase * self.rebase_chunk_size
        if budget > MAX_COMPUTE_UNITS:
            raise ConfigurationError(
                f"Compute budget {budget} for a full chunk exceeds {MAX_COMPUTE_UNITS}"
            )
        if not 1 <= self.extend_chunk_size <= MAX_ADDRESSES_PER_EXTEND:
            raise ConfigurationError(
                f"Extend chunk size {self.extend_chunk_size} outside 1..{MAX_ADDRESSES_PER_EXTEND}"
            )
        if not 1 <= self.close_chunk_size <= MAX_CLOSES_PER_TRANSACTION:
            raise ConfigurationError(
                f"Close chunk size {self.close_chunk_size} outside 1..{MAX_CLOSES_PER_TRANSACTION}"
            )
        if self.interval_seconds <= 0 or self.poll_cap_seconds <= 0 or self.backoff_seconds <= 0:
            raise ConfigurationError("Interval, poll cap and backoff must be positive")
        return self


# =============================================================================
# Loading
# =============================================================================
def _required(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "").strip()
    if not value:
        raise MissingEnvironmentVariableError(name)
    return value


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def resolve_rpc_url(env: Mapping[str, str]) -> str:
    """Explicit REBASER_RPC_URL wins; otherwise build it from cluster + API key."""
    explicit = env.get("REBASER_RPC_URL", "").strip()
    if explicit:
        return explicit
    cluster = env.get("REBASER_CLUSTER", "mainnet").strip().lower()
    template = CLUSTER_URLS.get(cluster)
    if template is None:
        raise ConfigurationError(f"Invalid cluster: {cluster!r}", cluster=cluster)
    api_key = _required(env, "REBASER_RPC_API_KEY")
    return template.format(api_key=api_key)


def load_settings(env: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None) -> AgentSettings:
    """
    Build AgentSettings from the environment.

    Args:
        env: Mapping to read from. Defaults to os.environ after loading .env.
        dotenv_path: Optional explicit .env path.

    Returns:
        Validated settings.
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    mints = tuple(m.strip() for m in _required(env, "REBASER_MINTS").split(",") if m.strip())

    settings = AgentSettings(
        mints=mints,
        boost_program_id=_required(env, "REBASER_BOOST_PROGRAM_ID"),
        keypair_path=_required(env, "REBASER_KEYPAIR_PATH"),
        rpc_url=resolve_rpc_url(env),
        rpc_timeout_seconds=_float(env, "REBASER_RPC_TIMEOUT_SECONDS", 30.0),
        confirm_timeout_seconds=_float(env, "REBASER_CONFIRM_TIMEOUT_SECONDS", 60.0),
        luts_path=env.get("REBASER_LUTS_PATH", "data/luts"),
        interval_seconds=_int(env, "REBASER_INTERVAL_SECONDS", 3600),
        poll_cap_seconds=_float(env, "REBASER_POLL_CAP_SECONDS", 300.0),
        backoff_seconds=_float(env, "REBASER_BACKOFF_SECONDS", 15.0),
        deactivation_wait_seconds=_float(env, "REBASER_DEACTIVATION_WAIT_SECONDS", 240.0),
        submission_mode=env.get("REBASER_SUBMISSION_MODE", "sequential").strip().lower(),
        bundle_url=env.get("REBASER_BUNDLE_URL") or None,
        bundle_size=_int(env, "REBASER_BUNDLE_SIZE", MAX_TRANSACTIONS_PER_BUNDLE),
        bundle_tip_lamports=_int(env, "REBASER_BUNDLE_TIP_LAMPORTS", 0),
        bundle_tip_account=env.get("REBASER_BUNDLE_TIP_ACCOUNT") or None,
        rebase_chunk_size=_int(env, "REBASER_REBASE_CHUNK_SIZE", 10),
        compute_units_base=_int(env, "REBASER_COMPUTE_UNITS_BASE", 20_000),
        compute_units_per_rebase=_int(env, "REBASER_COMPUTE_UNITS_PER_REBASE", 30_000),
        extend_chunk_size=_int(env, "REBASER_EXTEND_CHUNK_SIZE", 26),
        close_chunk_size=_int(env, "REBASER_CLOSE_CHUNK_SIZE", 10),
        log_level=env.get("REBASER_LOG_LEVEL", "INFO"),
        log_dir=env.get("REBASER_LOG_DIR", "logs"),
    )
    return settings.validate()


# =============================================================================
# Paths
# =============================================================================
def get_luts_dir(settings: AgentSettings) -> Path:
    """Get the registry storage root, creating it if necessary."""
    luts_dir = Path(settings.luts_path)
    luts_dir.mkdir(parents=True, exist_ok=True)
    return luts_dir
