"""Unique counterparty analysis for fetched contract snapshots."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from .fetcher import INBOUND_KEY, OUTBOUND_KEY, SnapshotMetadata
from .identity import ContractIdentity, canonical_id, is_system_account
from .settings import ReportingWindow


_LOGGER = logging.getLogger("tally.analysis")

_PAYER_RE = re.compile(r"^(\d+\.\d+\.\d+)[-@]")


class SnapshotError(ValueError):
    """Raised when a snapshot cannot be used for analysis."""


@dataclass(frozen=True)
class WalletReport:
    contract_id: str
    period: str
    wallets: Tuple[str, ...]
    total_contract_results: int
    total_transactions: int
    skipped_inbound: int = 0
    skipped_outbound: int = 0
    excluded_self_references: int = 0
    out_of_window_records: int = 0
    snapshot_truncated: bool = False

    @property
    def unique_wallets(self) -> int:
        return len(self.wallets)


def load_snapshot(path: str | Path) -> dict:
    file_path = Path(path)
    if not file_path.exists():
        raise SnapshotError(f"Snapshot not found: {file_path}")
    try:
        payload = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SnapshotError(f"Invalid JSON in {file_path}") from exc
    if not isinstance(payload, dict):
        raise SnapshotError(f"Snapshot {file_path} is not a JSON object")
    return payload


def snapshot_metadata(snapshot: dict) -> SnapshotMetadata:
    raw = snapshot.get("metadata")
    if not isinstance(raw, dict):
        raise SnapshotError("Snapshot has no metadata section")
    try:
        return SnapshotMetadata.model_validate(raw)
    except ValidationError as exc:
        raise SnapshotError(f"Invalid snapshot metadata: {exc}") from exc


def _records(snapshot: dict, key: str) -> List[object]:
    records = snapshot.get(key)
    if not isinstance(records, list):
        raise SnapshotError(f"Snapshot has no {key} list")
    return records


def _amount(item: dict) -> int:
    value = item.get("amount")
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return 0


def _credited_accounts(entries: object) -> Iterable[Optional[str]]:
    for item in entries or []:
        if isinstance(item, dict) and _amount(item) > 0:
            yield canonical_id(item.get("account"))


def record_timestamp(record: dict) -> Optional[Decimal]:
    """Exact ``seconds.nanoseconds`` consensus time of a record."""

    value = record.get("timestamp") or record.get("consensus_timestamp")
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


def inbound_counterparty(record: dict) -> Optional[str]:
    """The caller of a contract result.

    ``from`` is the caller's EVM address. For ECDSA accounts that is the key
    alias, which cannot be tied to the native id seen as an outbound payer
    without an account lookup, so such a wallet may be counted twice.
    """

    return canonical_id(record.get("from"))


def outbound_counterparty(record: dict, identity: ContractIdentity) -> Optional[str]:
    """The party a contract transaction paid, falling back to its payer.

    Token credits win over NFT receivers, which win over HBAR credits to
    non-system accounts. The contract is skipped in each of them since it
    appears on the sending side of its own transactions.
    """

    for account in _credited_accounts(record.get("token_transfers")):
        if account and not identity.is_self(account):
            return account
    for item in record.get("nft_transfers") or []:
        if not isinstance(item, dict):
            continue
        account = canonical_id(item.get("receiver_account_id"))
        if account and not identity.is_self(account):
            return account
    for account in _credited_accounts(record.get("transfers")):
        if account and not identity.is_self(account) and not is_system_account(account):
            return account

    match = _PAYER_RE.match(str(record.get("transaction_id") or ""))
    if match:
        return canonical_id(match.group(1))
    return None


def _collect(
    stream: str,
    records: List[object],
    extract: Callable[[dict], Optional[str]],
    identity: ContractIdentity,
    window: ReportingWindow,
    wallets: Set[str],
) -> Tuple[int, int, int]:
    skipped = 0
    excluded = 0
    out_of_window = 0
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            _LOGGER.debug("skip non-object record stream=%s index=%s", stream, index)
            skipped += 1
            continue
        timestamp = record_timestamp(record)
        if timestamp is not None and not window.contains(timestamp):
            out_of_window += 1
        wallet = extract(record)
        if wallet is None:
            _LOGGER.debug("skip record without counterparty stream=%s index=%s", stream, index)
            skipped += 1
            continue
        if identity.is_self(wallet):
            excluded += 1
            continue
        wallets.add(wallet)
    if skipped:
        _LOGGER.warning("records without counterparty stream=%s skipped=%s", stream, skipped)
    if out_of_window:
        _LOGGER.warning("records outside window stream=%s count=%s", stream, out_of_window)
    return skipped, excluded, out_of_window


def analyze_snapshot(snapshot: dict, identity: Optional[ContractIdentity] = None) -> WalletReport:
    metadata = snapshot_metadata(snapshot)
    try:
        window = metadata.window()
        if identity is None:
            identity = ContractIdentity(
                native_id=metadata.contract_id,
                evm_address=metadata.contract_evm_address or None,
            )
    except ValueError as exc:
        raise SnapshotError(str(exc)) from exc
    inbound = _records(snapshot, INBOUND_KEY)
    outbound = _records(snapshot, OUTBOUND_KEY)
    if metadata.total_contract_results != len(inbound) or metadata.total_transactions != len(outbound):
        _LOGGER.warning(
            "metadata totals differ from records inbound=%s/%s outbound=%s/%s",
            metadata.total_contract_results,
            len(inbound),
            metadata.total_transactions,
            len(outbound),
        )
    if metadata.truncated:
        _LOGGER.warning("snapshot is truncated; wallet count may under-report")

    wallets: Set[str] = set()
    skipped_in, excluded_in, outside_in = _collect(
        INBOUND_KEY, inbound, inbound_counterparty, identity, window, wallets
    )
    skipped_out, excluded_out, outside_out = _collect(
        OUTBOUND_KEY,
        outbound,
        lambda record: outbound_counterparty(record, identity),
        identity,
        window,
        wallets,
    )

    return WalletReport(
        contract_id=metadata.contract_id,
        period=window.label,
        wallets=tuple(sorted(wallets)),
        total_contract_results=len(inbound),
        total_transactions=len(outbound),
        skipped_inbound=skipped_in,
        skipped_outbound=skipped_out,
        excluded_self_references=excluded_in + excluded_out,
        out_of_window_records=outside_in + outside_out,
        snapshot_truncated=metadata.truncated,
    )


def report_payload(report: WalletReport, generated_at: Optional[datetime] = None) -> dict:
    generated_at = generated_at or datetime.now(timezone.utc)
    return {
        "period": report.period,
        "contractId": report.contract_id,
        "totalUniqueWallets": report.unique_wallets,
        "totalContractResults": report.total_contract_results,
        "totalTransactions": report.total_transactions,
        "skippedRecords": {
            "inbound": report.skipped_inbound,
            "outbound": report.skipped_outbound,
        },
        "excludedSelfReferences": report.excluded_self_references,
        "outOfWindowRecords": report.out_of_window_records,
        "snapshotTruncated": report.snapshot_truncated,
        "generatedAt": generated_at.isoformat().replace("+00:00", "Z"),
        "wallets": list(report.wallets),
    }
