"""
Pytest fixtures for tally tests. A fake mirror node serves pre-built pages per
stream path and follows its own ``links.next`` cursors, so no network is used.
"""

from __future__ import annotations

import os
from typing import Dict, List
from urllib.parse import parse_qs, urlparse

import pytest

from tally.settings import FetchSettings

BASE_URL = "https://mirror.test/api/v1"
CONTRACT_ID = "0.0.9392720"
CONTRACT_EVM = "0x00000000000000000000000000000000008f5690"
WINDOW_START = 1759276800  # 2025-10-01T00:00:00Z
WINDOW_END = 1764547200  # 2025-12-01T00:00:00Z


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: object = None, bad_json: bool = False):
        self.status_code = status_code
        self._payload = payload
        self._bad_json = bad_json

    def json(self) -> object:
        if self._bad_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


class FakeMirror:
    """Session stand-in keyed by path suffix (e.g. ``/results``, ``/transactions``).

    Each stream is a list whose entries are either a list of records (served as
    a page with a ``next`` link unless it is the last entry), a FakeResponse,
    or an exception to raise.
    """

    def __init__(self, streams: Dict[str, List[object]]):
        self.streams = streams
        self.calls: List[tuple] = []
        self.closed = False

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append((url, params))
        parsed = urlparse(url)
        page = int(parse_qs(parsed.query).get("page", ["0"])[0])
        for suffix, pages in self.streams.items():
            if parsed.path.endswith(suffix):
                entry = pages[page]
                if isinstance(entry, Exception):
                    raise entry
                if isinstance(entry, FakeResponse):
                    return entry
                key = "results" if suffix.endswith("results") else "transactions"
                next_link = f"{parsed.path}?page={page + 1}" if page + 1 < len(pages) else None
                return FakeResponse(200, {key: entry, "links": {"next": next_link}})
        raise AssertionError(f"Unexpected URL {url}")

    def urls(self, suffix: str) -> List[str]:
        return [url for url, _ in self.calls if urlparse(url).path.endswith(suffix)]

    def close(self) -> None:
        self.closed = True


def chunk(items: List[object], size: int) -> List[List[object]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def page_link(path: str, page: int) -> str:
    return f"{path}?page={page}"


@pytest.fixture
def fetch_settings(tmp_path) -> FetchSettings:
    return FetchSettings(
        base_url=BASE_URL,
        contract_id=CONTRACT_ID,
        evm_address=CONTRACT_EVM,
        start="2025-10-01",
        end="2025-12-01",
        period="2025",
        delay=0,
        snapshot_path=str(tmp_path / "snapshot.json"),
    )


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep a developer's TALLY_* variables and .env file out of the tests."""
    for key in list(os.environ):
        if key.startswith("TALLY_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
