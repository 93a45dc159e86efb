"""CLI for tally."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Type

from pydantic import BaseModel

from .analysis import SnapshotError, analyze_snapshot, load_snapshot, report_payload
from .archive import archive_artifact
from .fetcher import INBOUND_KEY, OUTBOUND_KEY, fetch_snapshot, write_json_atomic
from .settings import AnalyzeSettings, FetchSettings, env_defaults


_LOGGER = logging.getLogger("tally.cli")
_RULE = "=" * 60
_STREAM_TITLES = {
    INBOUND_KEY: "Fetching contract results (calls TO contract)...",
    OUTBOUND_KEY: "Fetching transactions (FROM contract to users)...",
}


def _load_config(path: Optional[str]) -> dict:
    if not path:
        return {}
    file_path = Path(path)
    if not file_path.exists():
        raise SystemExit(f"Config file not found: {file_path}")
    try:
        return json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Invalid JSON config: {file_path}") from exc


def _settings(model: Type[BaseModel], config: dict, args: argparse.Namespace):
    fields = model.model_fields
    values = {key: value for key, value in env_defaults().items() if key in fields}
    values.update({key: value for key, value in config.items() if key in fields})
    values.update({key: value for key, value in vars(args).items() if key in fields and value is not None})
    return model(**values)


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="Optional JSON config.")
    common.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level for diagnostics on stderr.",
    )
    common.add_argument("--s3-bucket", dest="s3_bucket", help="Archive the artifact to this S3 bucket.")
    common.add_argument("--s3-prefix", dest="s3_prefix", help="Key prefix for archived artifacts.")

    parser = argparse.ArgumentParser(prog="tally")
    subparsers = parser.add_subparsers(dest="command", required=True)

    fetch_parser = subparsers.add_parser(
        "fetch",
        parents=[common],
        help="Fetch inbound and outbound contract activity into a snapshot",
    )
    fetch_parser.add_argument("--contract-id", dest="contract_id", help="Native contract id (0.0.N).")
    fetch_parser.add_argument("--evm-address", dest="evm_address", help="Contract EVM address.")
    fetch_parser.add_argument("--start", help="Window start (ISO date, UTC, inclusive).")
    fetch_parser.add_argument("--end", help="Window end (ISO date, UTC, exclusive).")
    fetch_parser.add_argument("--period", help="Label for the reporting window.")
    fetch_parser.add_argument("--base-url", dest="base_url", help="Mirror node REST base URL.")
    fetch_parser.add_argument("--limit", type=int, help="Page size hint.")
    fetch_parser.add_argument("--delay", type=float, help="Seconds between requests.")
    fetch_parser.add_argument("--timeout", type=float, help="Request timeout in seconds.")
    fetch_parser.add_argument("--max-pages", dest="max_pages", type=int, help="Max pages per stream.")
    fetch_parser.add_argument("--deadline", type=float, help="Max seconds per stream.")
    fetch_parser.add_argument("--output", dest="snapshot_path", help="Snapshot JSON path.")

    analyze_parser = subparsers.add_parser(
        "analyze",
        parents=[common],
        help="Count unique counterparty wallets in a snapshot",
    )
    analyze_parser.add_argument("--input", dest="snapshot_path", help="Snapshot JSON path.")
    analyze_parser.add_argument("--output", dest="report_path", help="Wallet report JSON path.")

    return parser


class _Progress:
    def __init__(self) -> None:
        self.stream: Optional[str] = None

    def __call__(self, stream: str, page: int, total: int) -> None:
        if stream != self.stream:
            if self.stream is not None:
                print()
            print(f"\n{_STREAM_TITLES.get(stream, stream)}")
            self.stream = stream
        print(f"\r  Fetching page {page}... ({total} results so far)", end="", flush=True)

    def finish(self) -> None:
        if self.stream is not None:
            print()


def _run_fetch(args: argparse.Namespace, config: dict) -> int:
    settings: FetchSettings = _settings(FetchSettings, config, args)
    window = settings.window()
    identity = settings.identity()
    _LOGGER.info(
        "fetch identity contract=%s forms=%s", identity.native_id, ",".join(sorted(identity.forms))
    )

    print(_RULE)
    print("Contract Data Fetcher")
    print(_RULE)
    print(f"Contract ID: {settings.contract_id}")
    print(f"Period: {window.label} [{window.start}, {window.end})")
    print(_RULE)

    progress = _Progress()
    snapshot = fetch_snapshot(settings, on_page=progress)
    progress.finish()
    path = write_json_atomic(settings.snapshot_path, snapshot)
    archived = archive_artifact(path, settings.s3_bucket, settings.s3_prefix)

    metadata = snapshot["metadata"]
    print("\n" + _RULE)
    print("SUCCESS")
    print(_RULE)
    print(f"Saved to: {path}")
    print(f"Total contract results (TO contract): {metadata['totalContractResults']}")
    print(f"Total transactions (FROM contract): {metadata['totalTransactions']}")
    print(f"File size: {path.stat().st_size / 1024 / 1024:.2f} MB")
    if archived:
        print(f"Archived to: s3://{settings.s3_bucket}/{archived}")
    if metadata["truncated"]:
        for name, stream in metadata["streams"].items():
            if stream["truncated"]:
                print(
                    f"WARNING: {name} truncated (stop={stream['stopReason']}, "
                    f"last successful page {stream['lastSuccessfulPage']})"
                )
    print(_RULE)
    return 0


def _run_analyze(args: argparse.Namespace, config: dict) -> int:
    settings: AnalyzeSettings = _settings(AnalyzeSettings, config, args)
    snapshot = load_snapshot(settings.snapshot_path)
    report = analyze_snapshot(snapshot)
    path = write_json_atomic(settings.report_path, report_payload(report))
    archived = archive_artifact(path, settings.s3_bucket, settings.s3_prefix)

    print(_RULE)
    print(f"Contract ID: {report.contract_id}")
    print(f"Period: {report.period}")
    print(f"Total contract results (TO contract): {report.total_contract_results}")
    print(f"Total transactions (FROM contract): {report.total_transactions}")
    print(f"Total Unique Wallets: {report.unique_wallets}")
    skipped = report.skipped_inbound + report.skipped_outbound
    if skipped:
        print(f"Records without counterparty: {skipped}")
    if report.snapshot_truncated:
        print("WARNING: snapshot was truncated; the count may under-report.")
    print(f"Saved to: {path}")
    if archived:
        print(f"Archived to: s3://{settings.s3_bucket}/{archived}")
    print(_RULE)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    config = _load_config(args.config)

    try:
        if args.command == "fetch":
            return _run_fetch(args, config)
        if args.command == "analyze":
            return _run_analyze(args, config)
    except SnapshotError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:
        _LOGGER.exception("%s failed", args.command)
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
