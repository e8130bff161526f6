"""
Error taxonomy for the snapshot orchestrator.

Every stage failure is a ``PipelineError``.  The pipeline maps each error to an
``Outcome`` so callers can tell a rerun-worthy failure from a fatal one:

- ProvisionError      quota, name collision, invalid spec        fatal
- DiscoveryTimeout    container identity never observed          recoverable
- StreamInterrupted   transient SSH drop (reconnected internally) recoverable
- RemoteFailure       remote process exited non-zero             fatal
- SnapshotConflict    image creation refused (permission/quota)  fatal
- HandoffMissing      no resolvable snapshot for a consumer      fatal
- PublishFailed       image created but its handoff record lost  fatal
- UnexpectedError     provider or storage failure outside these  fatal
- StageTimeout        the enclosing deadline fired               recoverable

``TeardownFailure`` is never raised out of a stage; it is reported next to the
primary result so leaked resources can be reconciled by hand.
"""

from __future__ import annotations

import enum
import typing as t


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


class PipelineError(Exception):
    outcome: t.ClassVar[Outcome] = Outcome.FATAL


ProvisionKind = t.Literal["quota", "name-collision", "invalid-spec"]


class ProvisionError(PipelineError):
    def __init__(self, kind: ProvisionKind, message: str) -> None:
        super().__init__(f"{kind}: {message}")
        self.kind: ProvisionKind = kind


class DiscoveryTimeout(PipelineError):
    outcome = Outcome.RECOVERABLE

    def __init__(self, instance_name: str, timeout: float) -> None:
        super().__init__(
            f"container for {instance_name} not observed in system logs "
            f"within {timeout:.0f}s"
        )
        self.instance_name = instance_name
        self.timeout = timeout


class StreamInterrupted(PipelineError):
    outcome = Outcome.RECOVERABLE


class RemoteFailure(PipelineError):
    def __init__(self, instance_name: str, exit_code: int | None, message: str = "") -> None:
        detail = message or f"remote process exited with code {exit_code}"
        super().__init__(f"{instance_name}: {detail}")
        self.instance_name = instance_name
        self.exit_code = exit_code


class SnapshotConflict(PipelineError):
    pass


class ImageExists(SnapshotConflict):
    """The image name is already taken; the caller decides whether to replace it."""


class HandoffMissing(PipelineError):
    pass


class PublishFailed(PipelineError):
    def __init__(self, image_name: str, commit: str, cause: BaseException) -> None:
        super().__init__(
            f"image {image_name} was created but publishing commit {commit} failed: {cause}"
        )
        self.image_name = image_name
        self.commit = commit
        self.cause = cause


class UnexpectedError(PipelineError):
    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"{stage} failed: {type(cause).__name__}: {cause}")
        self.stage = stage
        self.cause = cause


class StageTimeout(PipelineError):
    outcome = Outcome.RECOVERABLE


class InvalidStateTransition(PipelineError):
    pass


class TeardownFailure(Exception):
    """Instance or disk deletion failed; surfaced as a warning, never raised."""

    def __init__(self, instance_name: str, cause: BaseException | str) -> None:
        super().__init__(f"failed to delete {instance_name}: {cause}")
        self.instance_name = instance_name
        self.cause = cause


class ResourceNotFound(Exception):
    """Raised by providers when a named resource does not exist."""


def outcome_for(error: BaseException) -> Outcome:
    if isinstance(error, PipelineError):
        return error.outcome
    return Outcome.FATAL
