from __future__ import annotations

from .._types import Console
from ..config import PipelineConfig
from .base import ComputeProvider


def build_provider(config: PipelineConfig, console: Console) -> ComputeProvider:
    if config.provider == "gce":
        from .gce import GceProvider

        return GceProvider(config)
    if config.provider == "morph":
        from .morph import MorphProvider

        return MorphProvider(config, console=console)
    raise ValueError(f"unknown compute provider {config.provider!r}")


__all__ = ["ComputeProvider", "build_provider"]
