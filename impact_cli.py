#!/usr/bin/env python3
"""
Impact Gateway - Command Line Interface

Usage:
    impact process <image> [<image> ...]    Run the pipeline on image files
    impact batch <directory>                Process every supported image in a directory
    impact status [--state S] [--limit N]   Show dedup ledger counts and recent records
    impact show <content_hash>              Show one ledger record
    impact verify-audit <audit.jsonl>       Verify a tamper-evident audit log
    impact config                           Show effective configuration

Exit codes: 0 all items succeeded or were duplicates, 1 at least one item
failed or was rejected, 3 input/configuration error.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from impact_gateway.audit_log import TamperEvidentAuditLog
from impact_gateway.config import ImpactSettings
from impact_gateway.crypto import Ed25519KeyPair, load_signing_key_from_env
from impact_gateway.errors import ImpactError
from impact_gateway.ledger import DedupLedger
from impact_gateway.models import BatchReport, EvidenceSubmission, OutcomeStatus
from impact_gateway.runtime import build_runtime
from impact_gateway.scheduler import SUPPORTED_EXTENSIONS

logger = logging.getLogger("impact_gateway.cli")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )
    logging.getLogger("impact_gateway").setLevel(level)


def load_config(config_path: Optional[Path]) -> dict:
    """
    Load configuration overrides from a JSON file.

    On invalid JSON, raises a clear CONFIG_ERROR rather than failing silently.
    """
    if config_path and config_path.exists():
        try:
            with open(config_path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(
                f"CONFIG_ERROR: Invalid JSON in config file '{config_path}': {e}. "
                f"Please check the config file syntax."
            ) from e
        except OSError as e:
            raise ValueError(
                f"CONFIG_ERROR: Failed to read config file '{config_path}': {e}"
            ) from e
        if not isinstance(data, dict):
            raise ValueError(f"CONFIG_ERROR: config file '{config_path}' must contain a JSON object")
        return data
    return {}


def settings_from_args(args) -> ImpactSettings:
    settings = ImpactSettings.from_env()
    try:
        settings = settings.with_overrides(load_config(args.config))
    except ImpactError as e:
        raise ValueError(f"CONFIG_ERROR: {e.message}: {e.details.get('keys')}") from e
    if args.db:
        settings = settings.with_overrides({"ledger_path": args.db})
    return settings


def _read_submissions(paths: List[Path], args) -> List[EvidenceSubmission]:
    hints = {}
    if getattr(args, "lat", None) is not None and getattr(args, "lng", None) is not None:
        hints = {"latitude": args.lat, "longitude": args.lng}
    subs = []
    for p in paths:
        try:
            data = p.read_bytes()
        except OSError as e:
            print(f"ERROR: cannot read {p}: {e}", file=sys.stderr)
            sys.exit(3)
        subs.append(
            EvidenceSubmission(
                data=data,
                filename=p.name,
                hints=dict(hints),
                description=getattr(args, "description", None),
            )
        )
    return subs


def _run_batch(settings: ImpactSettings, subs: List[EvidenceSubmission], concurrency: int) -> BatchReport:
    async def _go() -> BatchReport:
        runtime = build_runtime(settings)
        try:
            return await runtime.pipeline.process_batch(subs, concurrency=concurrency)
        finally:
            await runtime.aclose()

    return asyncio.run(_go())


def _print_report(report: BatchReport) -> None:
    print(f"\n{'='*60}")
    print("PIPELINE OUTCOMES")
    print(f"{'='*60}")
    for o in report.outcomes:
        line = f"  {o.status.value.upper():<9} {o.filename or '<bytes>'}"
        if o.proposal_id:
            line += f"  proposal={o.proposal_id[:18]}"
        if o.error:
            line += f"  {o.error.get('code')}: {o.error.get('message')}"
        print(line)
    summary = report.summary()
    print(f"\nSummary: " + ", ".join(f"{k}={v}" for k, v in summary.items()))
    print(f"{'='*60}\n")


def _exit_for(report: BatchReport) -> None:
    if report.count(OutcomeStatus.FAILED) or report.count(OutcomeStatus.REJECTED):
        sys.exit(1)
    sys.exit(0)


def cmd_process(args):
    """Process individual image files."""
    settings = settings_from_args(args)
    subs = _read_submissions([Path(f) for f in args.files], args)
    report = _run_batch(settings, subs, settings.concurrency)
    _print_report(report)
    _exit_for(report)


def cmd_batch(args):
    """Process every supported image in a directory."""
    settings = settings_from_args(args)
    root = Path(args.directory)
    if not root.is_dir():
        print(f"ERROR: not a directory: {root}", file=sys.stderr)
        sys.exit(3)
    paths = sorted(p for p in root.iterdir() if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS)
    if not paths:
        print(f"No supported images ({', '.join(SUPPORTED_EXTENSIONS)}) in {root}")
        sys.exit(0)
    subs = _read_submissions(paths, args)
    report = _run_batch(settings, subs, args.concurrency or settings.concurrency)
    _print_report(report)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    _exit_for(report)


def cmd_status(args):
    """Show dedup ledger status."""
    settings = settings_from_args(args)
    ledger = DedupLedger(settings.ledger_path, claim_ttl_seconds=settings.claim_ttl_seconds)
    counts = ledger.counts()
    print(f"\n{'='*60}")
    print("DEDUP LEDGER STATUS")
    print(f"{'='*60}")
    print(f"Database: {settings.ledger_path}")
    for state, n in counts.items():
        print(f"  {state:<8} {n}")
    records = ledger.list_records(args.state, limit=args.limit)
    if records:
        print("\nRecent records:")
        for r in records:
            print(f"  {r.content_hash[:16]}  {r.state:<8} attempts={r.attempts}  proposal={r.proposal_id or '-'}")
            if r.error:
                print(f"      error: {r.error[:80]}")
    print(f"{'='*60}\n")


def cmd_show(args):
    """Show one ledger record as JSON."""
    settings = settings_from_args(args)
    ledger = DedupLedger(settings.ledger_path, claim_ttl_seconds=settings.claim_ttl_seconds)
    record = ledger.get(args.content_hash)
    if record is None:
        print(f"No ledger record for {args.content_hash}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(record.to_dict(), indent=2))


def cmd_verify_audit(args):
    """Verify a tamper-evident audit log."""
    if args.public_key:
        try:
            key = Ed25519KeyPair.from_public_key(args.key_id, args.public_key)
        except ValueError as e:
            print(f"ERROR: invalid public key: {e}", file=sys.stderr)
            sys.exit(3)
    else:
        key = load_signing_key_from_env(key_id=args.key_id)
        if key is None:
            print("ERROR: pass --public-key or set IMPACT_SIGNING_KEY", file=sys.stderr)
            sys.exit(3)

    print(f"Verifying audit log {args.audit_log}...")
    ok, reason, count = TamperEvidentAuditLog.verify_file(args.audit_log, {key.key_id: key})
    print(f"Records checked: {count}")
    if ok:
        print(f"✓ Audit log integrity verified ({reason})")
        sys.exit(0)
    print(f"✗ Audit log integrity check FAILED at record {count}: {reason}")
    sys.exit(1)


def cmd_config(args):
    """Show effective configuration (secrets are not printed)."""
    settings = settings_from_args(args)
    print(f"\n{'='*60}")
    print("EFFECTIVE CONFIGURATION")
    print(f"{'='*60}")
    print(repr(settings))
    print(f"{'='*60}\n")


def main():
    parser = argparse.ArgumentParser(
        description="Impact Gateway CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", default=None, help="Path to dedup ledger database (overrides config)")
    parser.add_argument("--config", type=Path, help="Path to config JSON file")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    process_parser = subparsers.add_parser("process", help="Process image files")
    process_parser.add_argument("files", nargs="+", help="Image files")
    process_parser.add_argument("--description", help="Proposal description (default: from analysis)")
    process_parser.add_argument("--lat", type=float, help="Latitude hint when the image has no GPS data")
    process_parser.add_argument("--lng", type=float, help="Longitude hint when the image has no GPS data")
    process_parser.set_defaults(func=cmd_process)

    batch_parser = subparsers.add_parser("batch", help="Process a directory of images")
    batch_parser.add_argument("directory", help="Directory to scan")
    batch_parser.add_argument("--concurrency", type=int, default=None, help="Concurrent pipeline runs")
    batch_parser.add_argument("--json", action="store_true", help="Also print the report as JSON")
    batch_parser.set_defaults(func=cmd_batch)

    status_parser = subparsers.add_parser("status", help="Show dedup ledger status")
    status_parser.add_argument("--state", choices=["claimed", "success", "failed"], help="Filter by state")
    status_parser.add_argument("--limit", type=int, default=20, help="Number of records")
    status_parser.set_defaults(func=cmd_status)

    show_parser = subparsers.add_parser("show", help="Show a ledger record")
    show_parser.add_argument("content_hash", help="Canonical content hash (hex)")
    show_parser.set_defaults(func=cmd_show)

    audit_parser = subparsers.add_parser("verify-audit", help="Verify a tamper-evident audit log")
    audit_parser.add_argument("audit_log", help="Path to audit JSONL file")
    audit_parser.add_argument("--public-key", help="Signer public key (hex); default derives from IMPACT_SIGNING_KEY")
    audit_parser.add_argument("--key-id", default="operator", help="Signer key id (default: operator)")
    audit_parser.set_defaults(func=cmd_verify_audit)

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.set_defaults(func=cmd_config)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose)
    try:
        args.func(args)
    except ValueError as e:
        if str(e).startswith("CONFIG_ERROR"):
            print(f"ERROR: {e}", file=sys.stderr)
            sys.exit(3)
        raise


if __name__ == "__main__":
    main()
