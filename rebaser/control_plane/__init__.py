"""
REBASER control-plane primitives.

These modules drive the checkpoint for each pool: batching and submitting
rebases, keeping participant addresses in lookup tables, and remembering
which tables are still open.
"""

from .batcher import BundleSubmitter, SequentialSubmitter, StakeBatcher, SubmissionReport, Submitter
from .controller import CheckpointController, ControllerState
from .lookup_tables import LookupTableManager, LookupTableReport
from .registry import LookupTableRegistry

__all__ = [
    "BundleSubmitter",
    "CheckpointController",
    "ControllerState",
    "LookupTableManager",
    "LookupTableRegistry",
    "LookupTableReport",
    "SequentialSubmitter",
    "StakeBatcher",
    "SubmissionReport",
    "Submitter",
]
