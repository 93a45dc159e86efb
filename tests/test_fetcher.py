"""Tests for the dual-stream fetch orchestrator and snapshot persistence."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone

import pytest

from tally import fetcher
from tally.fetcher import (
    SnapshotMetadata,
    build_snapshot,
    fetch_snapshot,
    inbound_query,
    outbound_query,
    write_json_atomic,
)
from tally.mirror import MirrorClient, StreamResult

from conftest import (
    BASE_URL,
    CONTRACT_EVM,
    CONTRACT_ID,
    WINDOW_END,
    WINDOW_START,
    FakeMirror,
    FakeResponse,
    chunk,
)


def _client(mirror: FakeMirror) -> MirrorClient:
    return MirrorClient(BASE_URL, delay=0, session=mirror)


def test_queries_pass_window_bounds_through(fetch_settings):
    inbound = inbound_query(fetch_settings)
    assert inbound.path == f"contracts/{CONTRACT_ID}/results"
    assert inbound.results_key == "results"
    assert inbound.params == (
        ("timestamp", f"gte:{WINDOW_START}"),
        ("timestamp", f"lt:{WINDOW_END}"),
        ("limit", "100"),
        ("order", "asc"),
    )

    outbound = outbound_query(fetch_settings)
    assert outbound.path == "transactions"
    assert outbound.results_key == "transactions"
    assert outbound.params[0] == ("account.id", CONTRACT_ID)
    assert outbound.params[1:] == inbound.params


def test_fetch_snapshot_runs_streams_sequentially(fetch_settings):
    inbound = [{"from": f"0x{i:040x}", "timestamp": f"{WINDOW_START + i}.0"} for i in range(1001, 1006)]
    outbound = [{"transaction_id": f"0.0.{i}-1759276800-000000000"} for i in range(2001, 2004)]
    mirror = FakeMirror({"/results": chunk(inbound, 2), "/transactions": chunk(outbound, 2)})

    snapshot = fetch_snapshot(fetch_settings, client=_client(mirror))

    assert snapshot["contractResults"] == inbound
    assert snapshot["transactions"] == outbound
    paths = [url.split("?")[0] for url, _ in mirror.calls]
    assert paths == [f"{BASE_URL}/contracts/{CONTRACT_ID}/results"] * 3 + [
        f"{BASE_URL}/transactions"
    ] * 2
    assert not mirror.closed

    metadata = snapshot["metadata"]
    assert metadata["contractId"] == CONTRACT_ID
    assert metadata["contractEvmAddress"] == CONTRACT_EVM
    assert metadata["period"] == "2025"
    assert metadata["startTimestamp"] == WINDOW_START
    assert metadata["endTimestamp"] == WINDOW_END
    assert metadata["totalContractResults"] == 5
    assert metadata["totalTransactions"] == 3
    assert metadata["truncated"] is False
    assert metadata["streams"]["contractResults"] == {
        "pages": 3,
        "lastSuccessfulPage": 3,
        "truncated": False,
        "stopReason": "exhausted",
    }
    assert metadata["fetchedAt"].endswith("Z")


def test_failed_stream_is_flagged_without_touching_the_other(fetch_settings):
    outbound_pages = [[{"transaction_id": "0.0.2001-1-1"}], FakeResponse(503, {})]
    mirror = FakeMirror({"/results": [[{"from": "0.0.1001"}]], "/transactions": outbound_pages})

    snapshot = fetch_snapshot(fetch_settings, client=_client(mirror))

    metadata = snapshot["metadata"]
    assert metadata["truncated"] is True
    assert metadata["totalContractResults"] == 1
    assert metadata["totalTransactions"] == 1
    assert metadata["streams"]["contractResults"]["truncated"] is False
    assert metadata["streams"]["transactions"] == {
        "pages": 2,
        "lastSuccessfulPage": 1,
        "truncated": True,
        "stopReason": "http_error",
    }


def test_fetch_snapshot_owns_and_closes_default_client(fetch_settings, monkeypatch):
    mirror = FakeMirror({"/results": [[]], "/transactions": [[]]})
    created = []
    real_client = fetcher.MirrorClient

    def factory(base_url, delay, timeout):
        created.append((base_url, delay, timeout))
        return real_client(base_url, delay=delay, timeout=timeout, session=mirror)

    monkeypatch.setattr(fetcher, "MirrorClient", factory)
    snapshot = fetch_snapshot(fetch_settings)

    assert created == [(BASE_URL, 0, 30.0)]
    assert mirror.closed
    assert snapshot["metadata"]["totalContractResults"] == 0


def test_build_snapshot_formats_fetch_time(fetch_settings):
    fetched_at = datetime(2025, 12, 2, 8, 30, tzinfo=timezone.utc)
    snapshot = build_snapshot(
        fetch_settings,
        StreamResult(name="contractResults"),
        StreamResult(name="transactions"),
        fetched_at=fetched_at,
    )
    assert snapshot["metadata"]["fetchedAt"] == "2025-12-02T08:30:00Z"
    assert list(snapshot) == ["metadata", "contractResults", "transactions"]


def test_metadata_accepts_snapshots_without_completeness_fields():
    legacy = {
        "contractId": CONTRACT_ID,
        "contractEvmAddress": CONTRACT_EVM,
        "period": "2025",
        "startTimestamp": WINDOW_START,
        "endTimestamp": WINDOW_END,
        "fetchedAt": "2025-12-02T08:30:00.000Z",
        "totalContractResults": 10704,
        "totalTransactions": 9834,
    }
    metadata = SnapshotMetadata.model_validate(legacy)
    assert metadata.truncated is False
    assert metadata.streams == {}
    assert metadata.window().label == "2025"


def test_write_json_atomic_replaces_target(tmp_path):
    target = tmp_path / "out" / "snapshot.json"
    write_json_atomic(target, {"a": 1})
    write_json_atomic(target, {"b": [1, 2]})

    assert json.loads(target.read_text(encoding="utf-8")) == {"b": [1, 2]}
    assert [path.name for path in target.parent.iterdir()] == ["snapshot.json"]


def test_write_json_atomic_keeps_previous_file_on_failure(tmp_path):
    target = tmp_path / "snapshot.json"
    write_json_atomic(target, {"ok": True})

    with pytest.raises(TypeError):
        write_json_atomic(target, {"bad": object()})

    assert json.loads(target.read_text(encoding="utf-8")) == {"ok": True}
    assert [path.name for path in tmp_path.iterdir()] == ["snapshot.json"]


@pytest.mark.parametrize("umask, mode", [(0o022, 0o644), (0o027, 0o640)])
def test_write_json_atomic_follows_umask(tmp_path, umask, mode):
    previous = os.umask(umask)
    try:
        target = write_json_atomic(tmp_path / "report.json", {"a": 1})
    finally:
        os.umask(previous)

    assert target.stat().st_mode & 0o777 == mode
