#!/usr/bin/env python3
"""
AgentTrail - Command Line Interface

Usage:
    agenttrail hash <payload.json>     Compute the PoA hash of {goal, url, timestamp, result_json}
    agenttrail show <id>               Show one execution record
    agenttrail list [--limit N]        Show recent execution records
    agenttrail verify <id>             Triple-verify a record against the ledger
    agenttrail retry <id> [--force]    Re-anchor a record and wait for the outcome
    agenttrail serve                   Run the HTTP API
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import sys
from decimal import Decimal
from typing import Optional

from agenttrail.anchor import AnchorPhase, AnchorWorker
from agenttrail.canonical import canonical_poa_bytes, compute_poa_hash
from agenttrail.chain import build_chain_gateway_from_env
from agenttrail.config import TrailConfig
from agenttrail.errors import TrailError
from agenttrail.store import RecordStore
from agenttrail.verifier import Verifier

logger = logging.getLogger("agenttrail")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.setLevel(level)


def load_config(db_path: Optional[str]) -> TrailConfig:
    cfg = TrailConfig.from_env()
    if db_path:
        cfg = dataclasses.replace(cfg, db_path=db_path)
    return cfg


def cmd_hash(args) -> int:
    """Print the PoA hash of a payload file."""
    try:
        with open(args.payload_file, encoding="utf-8") as f:
            data = json.load(f, parse_float=Decimal)
    except FileNotFoundError:
        print(f"ERROR: File not found: {args.payload_file}", file=sys.stderr)
        return 3
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON in {args.payload_file}: {e}", file=sys.stderr)
        return 3

    if not isinstance(data, dict):
        print("ERROR: Payload must be a JSON object", file=sys.stderr)
        return 3
    data.setdefault("result_json", {})

    try:
        poa_hash = compute_poa_hash(data)
        canonical = canonical_poa_bytes(data).decode("utf-8")
    except TrailError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 3

    if args.canonical:
        print(canonical)
    print(poa_hash)
    return 0


def cmd_show(args) -> int:
    """Show one execution record as JSON."""
    store = RecordStore(load_config(args.db).db_path)
    record = store.get_record(args.record_id)
    if record is None:
        print(f"ERROR: Execution {args.record_id} not found", file=sys.stderr)
        return 1
    print(json.dumps(record.to_dict(), indent=2, default=str))
    return 0


def cmd_list(args) -> int:
    """Show recent execution records."""
    store = RecordStore(load_config(args.db).db_path)
    records = store.list_records(org_id=args.org, limit=args.limit)

    print(f"\n{'='*60}")
    print(f"EXECUTIONS (last {len(records)} records)")
    print(f"{'='*60}")
    for rec in records:
        print(f"\n{rec.created_at_utc} | {rec.id}")
        print(f"  Status: {rec.status.value}, Anchor: {rec.anchor_state.value}, Attempts: {rec.anchor_attempts}")
        print(f"  Goal:   {rec.raw_payload.goal[:70]}")
        print(f"  Hash:   {rec.poa_hash[:16]}...")
        if rec.tx_id:
            print(f"  Tx:     {rec.tx_id}")
        if rec.anchor_error:
            print(f"  Error:  {rec.anchor_error}")
    print(f"{'='*60}\n")
    return 0


def cmd_verify(args) -> int:
    """Triple-verify a record; exit 0 only if verified."""
    cfg = load_config(args.db)
    store = RecordStore(cfg.db_path)
    verifier = Verifier(store, build_chain_gateway_from_env(cfg))
    try:
        result = asyncio.run(verifier.verify(args.record_id))
    except TrailError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        mark = "✓" if result.verified else "✗"
        print(f"{mark} {args.record_id}: {'VERIFIED' if result.verified else 'NOT VERIFIED'}")
        print(f"  Stored hash:     {result.stored_hash}")
        print(f"  Recomputed hash: {result.recomputed_hash}")
        print(f"  On-chain hash:   {result.on_chain_hash}")
        print(f"  Tx:              {result.tx_id} (block {result.block_number})")
        print(f"  Contract:        {result.contract_address} on {result.chain}")
        if result.error:
            print(f"  Error:           {result.error}")
    return 0 if result.verified else 1


def cmd_retry(args) -> int:
    """Run one anchor attempt in the foreground."""
    cfg = load_config(args.db)
    store = RecordStore(cfg.db_path)
    record = store.get_record(args.record_id)
    if record is None:
        print(f"ERROR: Execution {args.record_id} not found", file=sys.stderr)
        return 1

    if not store.claim_anchor(record.id):
        if not args.force:
            print(
                f"ERROR: Anchor attempt for {record.id} already in progress "
                f"(anchor_state={record.anchor_state.value}); use --force to resubmit",
                file=sys.stderr,
            )
            return 2
        logger.warning(
            "Forcing a new anchor attempt for %s (anchor_state=%s, tx=%s)",
            record.id, record.anchor_state.value, record.tx_id,
        )
        store.mark_queued(record.id)

    worker = AnchorWorker(store, build_chain_gateway_from_env(cfg), confirm_timeout_s=cfg.confirm_timeout_s)
    phase = asyncio.run(worker.run(record.id, record.poa_hash))
    updated = store.get_record(record.id)
    print(f"{record.id}: {phase.value}")
    if updated is not None and updated.tx_id:
        print(f"  Tx: {updated.tx_id} (block {updated.block_number})")
    if updated is not None and updated.anchor_error:
        print(f"  Error: {updated.anchor_error}")
    return 0 if phase == AnchorPhase.COMPLETED else 1


def cmd_serve(args) -> int:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from agenttrail.server import create_app

    if args.db:
        os.environ["AGENTTRAIL_DB_PATH"] = args.db
    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="AgentTrail CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", default=None, help="Path to record database (default: AGENTTRAIL_DB_PATH or agenttrail.db)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # hash command
    hash_parser = subparsers.add_parser("hash", help="Compute a PoA hash")
    hash_parser.add_argument("payload_file", help="Path to payload JSON file")
    hash_parser.add_argument("--canonical", action="store_true", help="Also print the canonical form")
    hash_parser.set_defaults(func=cmd_hash)

    # show command
    show_parser = subparsers.add_parser("show", help="Show an execution record")
    show_parser.add_argument("record_id")
    show_parser.set_defaults(func=cmd_show)

    # list command
    list_parser = subparsers.add_parser("list", help="Show recent execution records")
    list_parser.add_argument("--limit", type=int, default=50, help="Number of records")
    list_parser.add_argument("--org", default=None, help="Only records of this org")
    list_parser.set_defaults(func=cmd_list)

    # verify command
    verify_parser = subparsers.add_parser("verify", help="Triple-verify a record")
    verify_parser.add_argument("record_id")
    verify_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    verify_parser.set_defaults(func=cmd_verify)

    # retry command
    retry_parser = subparsers.add_parser("retry", help="Re-anchor a record")
    retry_parser.add_argument("record_id")
    retry_parser.add_argument("--force", action="store_true",
                              help="Resubmit even if an attempt looks in progress (stuck records)")
    retry_parser.set_defaults(func=cmd_retry)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
