"""Fetch inbound and outbound contract activity into a snapshot document."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

from pydantic import BaseModel, Field

from .mirror import MirrorClient, StreamQuery, StreamResult, collect
from .settings import FetchSettings, ReportingWindow


_LOGGER = logging.getLogger("tally.fetcher")

INBOUND_KEY = "contractResults"
OUTBOUND_KEY = "transactions"


class StreamSummary(BaseModel):
    pages: int = Field(default=0, description="Pages requested.")
    last_successful_page: int = Field(
        default=0,
        alias="lastSuccessfulPage",
        description="Last page that returned a usable response.",
    )
    truncated: bool = Field(default=False, description="Stream stopped before the feed ended.")
    stop_reason: str = Field(default="exhausted", alias="stopReason")


class SnapshotMetadata(BaseModel):
    contract_id: str = Field(alias="contractId", description="Native id of the audited contract.")
    contract_evm_address: Optional[str] = Field(default=None, alias="contractEvmAddress")
    period: str = Field(default="", description="Reporting window label.")
    start_timestamp: int = Field(alias="startTimestamp", description="Window start, inclusive.")
    end_timestamp: int = Field(alias="endTimestamp", description="Window end, exclusive.")
    fetched_at: str = Field(default="", alias="fetchedAt")
    total_contract_results: int = Field(default=0, alias="totalContractResults")
    total_transactions: int = Field(default=0, alias="totalTransactions")
    truncated: bool = Field(
        default=False,
        description="Either stream stopped early; totals may under-report.",
    )
    streams: Dict[str, StreamSummary] = Field(default_factory=dict)

    def window(self) -> ReportingWindow:
        return ReportingWindow(start=self.start_timestamp, end=self.end_timestamp, label=self.period)


def _window_params(settings: FetchSettings, window: ReportingWindow) -> tuple:
    return (
        ("timestamp", f"gte:{window.start}"),
        ("timestamp", f"lt:{window.end}"),
        ("limit", str(settings.limit)),
        ("order", "asc"),
    )


def inbound_query(settings: FetchSettings) -> StreamQuery:
    """Contract results: calls made to the contract."""

    return StreamQuery(
        name=INBOUND_KEY,
        path=f"contracts/{settings.contract_id}/results",
        params=_window_params(settings, settings.window()),
        results_key="results",
    )


def outbound_query(settings: FetchSettings) -> StreamQuery:
    """Transactions where the contract is the transacting account."""

    return StreamQuery(
        name=OUTBOUND_KEY,
        path="transactions",
        params=(("account.id", settings.contract_id),) + _window_params(settings, settings.window()),
        results_key="transactions",
    )


def build_snapshot(
    settings: FetchSettings,
    inbound: StreamResult,
    outbound: StreamResult,
    fetched_at: Optional[datetime] = None,
) -> dict:
    window = settings.window()
    fetched_at = fetched_at or datetime.now(timezone.utc)
    metadata = SnapshotMetadata.model_validate(
        {
            "contractId": settings.contract_id,
            "contractEvmAddress": settings.evm_address,
            "period": window.label,
            "startTimestamp": window.start,
            "endTimestamp": window.end,
            "fetchedAt": fetched_at.isoformat().replace("+00:00", "Z"),
            "totalContractResults": len(inbound.records),
            "totalTransactions": len(outbound.records),
            "truncated": inbound.truncated or outbound.truncated,
            "streams": {
                INBOUND_KEY: inbound.summary(),
                OUTBOUND_KEY: outbound.summary(),
            },
        }
    )
    return {
        "metadata": metadata.model_dump(by_alias=True),
        INBOUND_KEY: inbound.records,
        OUTBOUND_KEY: outbound.records,
    }


def fetch_snapshot(
    settings: FetchSettings,
    client: Optional[MirrorClient] = None,
    on_page: Optional[Callable[[str, int, int], None]] = None,
) -> dict:
    """Collect both streams sequentially through one client and build the snapshot."""

    owns_client = client is None
    if client is None:
        client = MirrorClient(settings.base_url, delay=settings.delay, timeout=settings.timeout)
    try:
        results = []
        for query in (inbound_query(settings), outbound_query(settings)):
            _LOGGER.info("fetch stream start stream=%s contract=%s", query.name, settings.contract_id)
            results.append(
                collect(
                    client,
                    query,
                    max_pages=settings.max_pages,
                    deadline=settings.deadline,
                    on_page=on_page,
                )
            )
    finally:
        if owns_client:
            client.close()
    inbound, outbound = results
    return build_snapshot(settings, inbound, outbound)


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def write_json_atomic(path: str | Path, payload: dict, sort_keys: bool = False) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=sort_keys)
        os.chmod(tmp_name, 0o666 & ~_current_umask())
        os.replace(tmp_name, target)
    except Exception:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return target
