"""
Cross-run handoff of the commit whose state snapshot later runs should use.

Each successful regeneration publishes one small JSON record under its own
blob name, so concurrent publications never touch each other's data.  A
consumer resolves its own run's record first and otherwise falls back to the
most recently published record of the same workflow.  Ordering is by
``publishedAt``; equal timestamps are broken by the larger run id (numeric ids
compare numerically).
"""

from __future__ import annotations

import json
import re
import typing as t
from dataclasses import dataclass
from datetime import datetime, timezone

from ._types import Console
from .blobstore import BlobStore
from .errors import HandoffMissing

CURRENT_RECORD_SCHEMA_VERSION = 1
DEFAULT_RETENTION_DAYS = 1095
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_SAFE_RUN_ID = re.compile(r"[^A-Za-z0-9._-]+")


def _iso_timestamp(now: datetime | None = None) -> str:
    moment = (now or datetime.now(tz=timezone.utc)).astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _coalesce_str(value: t.Any, default: str) -> str:
    if isinstance(value, str) and value:
        return value
    return default


def _coalesce_int(value: t.Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(slots=True, frozen=True)
class HandoffRecord:
    run_id: str
    workflow: str
    commit: str
    network: str
    published_at: str

    def to_json(self) -> bytes:
        document = {
            "schemaVersion": CURRENT_RECORD_SCHEMA_VERSION,
            "runId": self.run_id,
            "workflow": self.workflow,
            "commit": self.commit,
            "network": self.network,
            "publishedAt": self.published_at,
        }
        return json.dumps(document, indent=2, sort_keys=False).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "HandoffRecord":
        document = json.loads(raw.decode("utf-8"))
        if not isinstance(document, dict):
            raise ValueError("handoff record is not a JSON object")
        version = _coalesce_int(document.get("schemaVersion"), CURRENT_RECORD_SCHEMA_VERSION)
        if version > CURRENT_RECORD_SCHEMA_VERSION:
            raise ValueError(f"unsupported handoff schema version {version}")
        commit = _coalesce_str(document.get("commit"), "")
        if not commit:
            raise ValueError("handoff record has no commit")
        return cls(
            run_id=_coalesce_str(document.get("runId"), ""),
            workflow=_coalesce_str(document.get("workflow"), ""),
            commit=commit,
            network=_coalesce_str(document.get("network"), ""),
            published_at=_coalesce_str(document.get("publishedAt"), ""),
        )

    @property
    def order_key(self) -> tuple[datetime, int, str]:
        numeric = int(self.run_id) if self.run_id.isdigit() else -1
        return (_parse_timestamp(self.published_at), numeric, self.run_id)


class HandoffStore:
    def __init__(
        self,
        blobs: BlobStore,
        console: Console,
        *,
        workflow: str,
        artifact: str = "latest-disk-state-sha",
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: t.Callable[[], datetime] | None = None,
    ) -> None:
        self._blobs = blobs
        self._console = console
        self._workflow = workflow
        self._artifact = artifact
        self._retention_days = retention_days
        self._clock = clock

    @property
    def prefix(self) -> str:
        return f"{self._workflow}/{self._artifact}/"

    def blob_name(self, run_id: str) -> str:
        safe = _SAFE_RUN_ID.sub("-", run_id).strip("-")
        if not safe:
            raise ValueError(f"run id {run_id!r} has no usable characters")
        return f"{self.prefix}{safe}.json"

    def publish(self, run_id: str, commit: str, *, network: str = "") -> HandoffRecord:
        record = HandoffRecord(
            run_id=run_id,
            workflow=self._workflow,
            commit=commit,
            network=network.lower(),
            published_at=_iso_timestamp(self._clock() if self._clock else None),
        )
        self._blobs.upload(
            self.blob_name(run_id), record.to_json(), retention_days=self._retention_days
        )
        self._console.always(
            f"[handoff] run {run_id} published state commit {commit}"
            + (f" ({record.network})" if record.network else "")
        )
        return record

    def _load(self, name: str) -> HandoffRecord | None:
        try:
            return HandoffRecord.from_json(self._blobs.download(name))
        except KeyError:
            return None
        except (ValueError, UnicodeDecodeError) as exc:
            self._console.warn(f"[handoff] ignoring unreadable record {name}: {exc}")
            return None

    def records(self) -> list[HandoffRecord]:
        loaded = (self._load(name) for name in self._blobs.list(self.prefix))
        return sorted((record for record in loaded if record is not None), key=lambda r: r.order_key)

    def resolve_record(self, run_id: str | None = None, *, network: str = "") -> HandoffRecord:
        wanted_network = network.lower()
        if run_id is not None:
            own = self._load(self.blob_name(run_id))
            if own is not None and (not wanted_network or own.network in ("", wanted_network)):
                self._console.info(f"[handoff] using run {run_id}'s own record ({own.commit})")
                return own
        candidates = [
            record
            for record in self.records()
            if not wanted_network or record.network in ("", wanted_network)
        ]
        if not candidates:
            scope = f" for {wanted_network}" if wanted_network else ""
            raise HandoffMissing(
                f"no published state snapshot in {self.prefix}{scope}; "
                "run the regeneration stage first"
            )
        latest = candidates[-1]
        self._console.info(
            f"[handoff] using latest record from run {latest.run_id} ({latest.commit})"
        )
        return latest

    def resolve(self, run_id: str | None = None, *, network: str = "") -> str:
        return self.resolve_record(run_id, network=network).commit
