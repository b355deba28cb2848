"""
REBASER — Staking Pool Checkpoint Agent

Keeps the reward checkpoint of one or more boost pools moving forward:

Main Components:
- rebaser.control_plane: Per-pool controller, batching, lookup table lifecycle
- rebaser.ledger: Gateway contract, account layouts, JSON-RPC implementation
- rebaser.shared: Settings, logging, errors and utilities

Usage:
    from rebaser.shared.settings import load_settings
    from rebaser.shared.logging import get_logger

    logger = get_logger("rebaser")
    settings = load_settings()
"""

# Version
__version__ = "0.1.0"

# Main exports
from rebaser.shared.settings import (
    PROJECT_NAME,
    VERSION,
    AgentSettings,
    load_settings,
)

from rebaser.shared.logging import get_logger

from rebaser.shared.errors import ErrorKind, RebaserError

__all__ = [
    # Version
    "__version__",
    # Settings
    "PROJECT_NAME",
    "VERSION",
    "AgentSettings",
    "load_settings",
    # Logging
    "get_logger",
    # Errors
    "ErrorKind",
    "RebaserError",
]
