from __future__ import annotations

import json
from datetime import timedelta

import pytest

from snapshot_ci.errors import HandoffMissing, Outcome
from snapshot_ci.handoff import HandoffRecord, HandoffStore


def test_publish_writes_one_blob_per_run(handoff, blobs) -> None:
    handoff.publish("100", "abc1234", network="Mainnet")
    handoff.publish("101", "def5678", network="Mainnet")
    assert blobs.list(handoff.prefix) == [
        "test.yml/latest-disk-state-sha/100.json",
        "test.yml/latest-disk-state-sha/101.json",
    ]
    document = json.loads(blobs.download("test.yml/latest-disk-state-sha/100.json"))
    assert document["schemaVersion"] == 1
    assert document["commit"] == "abc1234"
    assert document["network"] == "mainnet"


def test_own_record_wins_over_newer_ones(handoff, clock) -> None:
    handoff.publish("100", "abc1234")
    clock.now += timedelta(minutes=5)
    handoff.publish("101", "def5678")
    assert handoff.resolve("100") == "abc1234"


def test_falls_back_to_the_latest_record(handoff, clock) -> None:
    handoff.publish("100", "abc1234")
    clock.now += timedelta(minutes=5)
    handoff.publish("99", "def5678")
    assert handoff.resolve("555") == "def5678"
    assert handoff.resolve() == "def5678"


def test_equal_timestamps_prefer_the_larger_run_id(handoff) -> None:
    handoff.publish("1000", "aaaaaaa")
    handoff.publish("999", "bbbbbbb")
    assert handoff.resolve_record().run_id == "1000"


def test_network_filter_skips_other_networks(handoff, clock) -> None:
    handoff.publish("100", "abc1234", network="Mainnet")
    clock.now += timedelta(minutes=5)
    handoff.publish("101", "def5678", network="Testnet")
    assert handoff.resolve("555", network="mainnet") == "abc1234"


def test_nothing_published_raises_handoff_missing(handoff) -> None:
    with pytest.raises(HandoffMissing) as excinfo:
        handoff.resolve("100")
    assert excinfo.value.outcome is Outcome.FATAL


def test_records_older_than_retention_are_ignored(blobs, console, clock) -> None:
    store = HandoffStore(blobs, console, workflow="test.yml", retention_days=1, clock=clock)
    store.publish("100", "abc1234")
    clock.now += timedelta(days=2)
    with pytest.raises(HandoffMissing):
        store.resolve()


def test_unreadable_records_are_skipped(handoff, blobs, clock) -> None:
    handoff.publish("100", "abc1234")
    clock.now += timedelta(minutes=5)
    blobs.upload(handoff.blob_name("101"), b"not json", retention_days=1)
    assert handoff.resolve() == "abc1234"


def test_workflows_do_not_share_records(blobs, console, clock) -> None:
    HandoffStore(blobs, console, workflow="other.yml", clock=clock).publish("1", "abc1234")
    with pytest.raises(HandoffMissing):
        HandoffStore(blobs, console, workflow="test.yml", clock=clock).resolve()


def test_record_requires_a_commit() -> None:
    with pytest.raises(ValueError):
        HandoffRecord.from_json(b'{"runId": "1"}')


def test_unsafe_run_ids_are_sanitised(handoff) -> None:
    assert handoff.blob_name("12/../34") == "test.yml/latest-disk-state-sha/12-..-34.json"


def test_newer_schema_versions_are_rejected() -> None:
    with pytest.raises(ValueError, match="schema version"):
        HandoffRecord.from_json(b'{"schemaVersion": 2, "commit": "abc1234"}')
