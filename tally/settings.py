"""Configuration for the fetch and analyze stages."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from decimal import Decimal
from typing import Dict, Optional, Union

from pydantic import BaseModel, Field

from .identity import ContractIdentity


DEFAULT_BASE_URL = "https://mainnet-public.mirrornode.hedera.com/api/v1"
DEFAULT_CONTRACT_ID = "0.0.9392720"
DEFAULT_CONTRACT_EVM_ADDRESS = "0x00000000000000000000000000000000008f5690"
DEFAULT_START = "2025-10-01"
DEFAULT_END = "2025-12-01"
DEFAULT_PERIOD = "2025"
DEFAULT_SNAPSHOT_PATH = "dexpay_contract_calls_2025.json"
DEFAULT_REPORT_PATH = "dexpay_unique_wallets_2025.json"

_ENV_KEYS = {
    "base_url": "TALLY_MIRROR_BASE_URL",
    "contract_id": "TALLY_CONTRACT_ID",
    "evm_address": "TALLY_CONTRACT_EVM_ADDRESS",
    "start": "TALLY_WINDOW_START",
    "end": "TALLY_WINDOW_END",
    "period": "TALLY_PERIOD",
    "limit": "TALLY_PAGE_LIMIT",
    "delay": "TALLY_REQUEST_DELAY",
    "timeout": "TALLY_REQUEST_TIMEOUT",
    "max_pages": "TALLY_MAX_PAGES",
    "deadline": "TALLY_DEADLINE_SECONDS",
    "snapshot_path": "TALLY_SNAPSHOT_PATH",
    "report_path": "TALLY_REPORT_PATH",
    "s3_bucket": "TALLY_S3_BUCKET",
    "s3_prefix": "TALLY_S3_PREFIX",
}


def _load_dotenv(path: str = ".env") -> None:
    env_file = Path(path)
    if not env_file.exists():
        return
    for line in env_file.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def env_defaults(dotenv_path: str = ".env") -> Dict[str, str]:
    """Return settings overrides found in ``TALLY_*`` environment variables."""

    _load_dotenv(dotenv_path)
    defaults = {}
    for field, env_key in _ENV_KEYS.items():
        value = os.getenv(env_key)
        if value:
            defaults[field] = value
    return defaults


def _parse_utc(value: str) -> int:
    cleaned = value.strip().replace("Z", "+00:00")
    parsed = datetime.fromisoformat(cleaned)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


@dataclass(frozen=True)
class ReportingWindow:
    """Half-open ``[start, end)`` window in Unix seconds."""

    start: int
    end: int
    label: str = ""

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError(f"Window start {self.start} must be before end {self.end}")
        if not self.label:
            object.__setattr__(self, "label", self._default_label())

    @classmethod
    def from_dates(cls, start: str, end: str, label: Optional[str] = None) -> "ReportingWindow":
        return cls(start=_parse_utc(start), end=_parse_utc(end), label=label or "")

    def contains(self, timestamp: Union[int, float, Decimal]) -> bool:
        return self.start <= timestamp < self.end

    def _default_label(self) -> str:
        start = datetime.fromtimestamp(self.start, tz=timezone.utc).strftime("%Y-%m-%d")
        end = datetime.fromtimestamp(self.end, tz=timezone.utc).strftime("%Y-%m-%d")
        return f"{start}/{end}"


class FetchSettings(BaseModel):
    base_url: str = Field(
        default=DEFAULT_BASE_URL,
        description="Mirror node REST base URL (including /api/v1).",
    )
    contract_id: str = Field(
        default=DEFAULT_CONTRACT_ID,
        description="Native shard.realm.num id of the audited contract.",
    )
    evm_address: Optional[str] = Field(
        default=DEFAULT_CONTRACT_EVM_ADDRESS,
        description="EVM address form of the audited contract.",
    )
    start: str = Field(
        default=DEFAULT_START,
        description="Window start (ISO date or datetime, UTC, inclusive).",
    )
    end: str = Field(
        default=DEFAULT_END,
        description="Window end (ISO date or datetime, UTC, exclusive).",
    )
    period: Optional[str] = Field(
        default=DEFAULT_PERIOD,
        description="Human label for the reporting window.",
    )
    limit: int = Field(
        default=100,
        description="Page size hint sent as limit=<n>.",
    )
    delay: float = Field(
        default=0.2,
        description="Minimum seconds between consecutive requests.",
    )
    timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for each request.",
    )
    max_pages: int = Field(
        default=10000,
        description="Max pages per stream before stopping as truncated.",
    )
    deadline: Optional[float] = Field(
        default=None,
        description="Max seconds per stream before stopping as truncated.",
    )
    snapshot_path: str = Field(
        default=DEFAULT_SNAPSHOT_PATH,
        description="Where the snapshot JSON is written.",
    )
    s3_bucket: Optional[str] = Field(
        default=None,
        description="Optional S3 bucket to archive the snapshot to.",
    )
    s3_prefix: str = Field(
        default="tally",
        description="Key prefix for archived artifacts.",
    )

    def window(self) -> ReportingWindow:
        return ReportingWindow.from_dates(self.start, self.end, label=self.period)

    def identity(self) -> ContractIdentity:
        return ContractIdentity(native_id=self.contract_id, evm_address=self.evm_address or None)


class AnalyzeSettings(BaseModel):
    snapshot_path: str = Field(
        default=DEFAULT_SNAPSHOT_PATH,
        description="Snapshot JSON produced by the fetch stage.",
    )
    report_path: str = Field(
        default=DEFAULT_REPORT_PATH,
        description="Where the wallet report JSON is written.",
    )
    s3_bucket: Optional[str] = Field(
        default=None,
        description="Optional S3 bucket to archive the report to.",
    )
    s3_prefix: str = Field(
        default="tally",
        description="Key prefix for archived artifacts.",
    )
