"""Regenerate, hand off and consume cached state disk snapshots across CI runs."""

from .config import PipelineConfig
from .errors import Outcome
from .pipeline import StageReport, regenerate_snapshot, run_from_snapshot

__all__ = [
    "Outcome",
    "PipelineConfig",
    "StageReport",
    "regenerate_snapshot",
    "run_from_snapshot",
]
