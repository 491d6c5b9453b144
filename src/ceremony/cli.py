"""Ceremony CLI — operator commands for the contribution coordinator.

Usage:
    python -m ceremony.cli status
    python -m ceremony.cli create-ceremony --id c1 --title "My Setup" --coordinator coord \\
        --start 2026-01-01T00:00:00+00:00 --end 2026-02-01T00:00:00+00:00 --mechanism fixed
    python -m ceremony.cli add-circuit --ceremony c1 --name multiplier --constraints 1000 --wires 1200 --pot 12
    python -m ceremony.cli open-ceremony --id c1
    python -m ceremony.cli sweep --watch --interval 30
    python -m ceremony.cli reconcile
    python -m ceremony.cli close-ceremony --id c1
    python -m ceremony.cli finalize --id c1 --coordinator coord

State lives in the data directory (state.json and events.jsonl). Every
command except `reconcile` first re-arms lock timers from that state and
evicts locks that expired while nothing was running.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ceremony.config import DEFAULT_CONFIG_PATH, CoordinatorConfig
from ceremony.context import RequestContext, ServiceHandles
from ceremony.errors import CeremonyError
from ceremony.interfaces import ContributorIdentity
from ceremony.models.ceremony import CircuitMetadata, TimeoutMechanism, TimeoutPolicy
from ceremony.persistence.event_log import EventLog
from ceremony.persistence.metadata_store import InMemoryMetadataStore
from ceremony.service import CoordinatorService, ServiceResult
from ceremony.storage.local import LocalObjectStorage


DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _load_config(args: argparse.Namespace) -> CoordinatorConfig:
    if args.env_file is not None or args.config is None:
        return CoordinatorConfig.from_env(args.env_file)
    return CoordinatorConfig.from_json(args.config)


def _make_service(args: argparse.Namespace, reconcile: bool = True) -> CoordinatorService:
    """Create a CoordinatorService over the durable data directory."""
    data_dir: Path = args.data
    data_dir.mkdir(parents=True, exist_ok=True)
    handles = ServiceHandles(
        store=InMemoryMetadataStore(storage_path=data_dir / "state.json"),
        storage=LocalObjectStorage(),
        event_log=EventLog(storage_path=data_dir / "events.jsonl"),
    )
    service = CoordinatorService(handles, _load_config(args))
    if reconcile:
        service.reconcile()
    return service


def _parse_utc(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _report(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, default=str))
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    try:
        status = service.status(args.ceremony)
    except CeremonyError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(json.dumps(status, indent=2))
    return 0


def cmd_create_ceremony(args: argparse.Namespace) -> int:
    service = _make_service(args)
    policy = TimeoutPolicy(
        mechanism=TimeoutMechanism(args.mechanism),
        fixed_window_minutes=args.window_minutes,
        dynamic_threshold_pct=args.threshold_pct,
        penalty_minutes=args.penalty_minutes,
    )
    try:
        ceremony = service.create_ceremony(
            ceremony_id=args.id,
            title=args.title,
            coordinator_id=args.coordinator,
            start_utc=_parse_utc(args.start),
            end_utc=_parse_utc(args.end),
            timeout_policy=policy,
            required_contributions=args.required,
        )
    except (CeremonyError, ValueError) as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(f"Created ceremony: {ceremony.ceremony_id} (prefix: {ceremony.prefix})")
    return 0


def cmd_add_circuit(args: argparse.Namespace) -> int:
    service = _make_service(args)
    metadata = CircuitMetadata(
        constraints=args.constraints,
        wires=args.wires,
        pot=args.pot,
        curve=args.curve,
        zkey_size_bytes=args.zkey_size,
    )
    try:
        circuit = service.add_circuit(
            args.ceremony, args.name, metadata, sequence_position=args.position,
        )
    except (CeremonyError, ValueError) as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(f"Added circuit: {circuit.circuit_id} (position: {circuit.sequence_position})")
    return 0


def cmd_open_ceremony(args: argparse.Namespace) -> int:
    return _report(_make_service(args).open_ceremony(args.id))


def cmd_close_ceremony(args: argparse.Namespace) -> int:
    return _report(_make_service(args).close_ceremony(args.id))


def cmd_finalize(args: argparse.Namespace) -> int:
    service = _make_service(args)
    ctx = RequestContext(
        identity=ContributorIdentity(contributor_id=args.coordinator),
        handles=service.handles,
    )
    try:
        ceremony = service.finalize_ceremony(ctx, args.id)
    except CeremonyError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(f"Finalized ceremony: {ceremony.ceremony_id}")
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    """Evict expired locks once, or every --interval seconds with --watch."""
    service = _make_service(args)
    iterations = 0
    try:
        while True:
            result = service.sweep_timeouts()
            if result.data["evicted"] or not args.watch:
                print(json.dumps(result.data, indent=2))
            iterations += 1
            if not args.watch or (args.max_iterations and iterations >= args.max_iterations):
                return 0
            time.sleep(args.interval)
    except KeyboardInterrupt:
        return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    return _report(_make_service(args, reconcile=False).reconcile())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ceremony",
        description="Trusted-setup ceremony coordinator — operator CLI",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=DEFAULT_DATA,
        help="Directory holding state.json and events.jsonl (default: data/)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"JSON params file (e.g. {DEFAULT_CONFIG_PATH.name}); default reads the environment",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="A .env file to load before reading the environment",
    )
    sub = parser.add_subparsers(dest="command")

    # status
    p_status = sub.add_parser("status", help="Show ceremonies, queues and locks")
    p_status.add_argument("--ceremony", help="Limit to one ceremony")

    # create-ceremony
    p_create = sub.add_parser("create-ceremony", help="Create a scheduled ceremony")
    p_create.add_argument("--id", required=True, help="Ceremony ID")
    p_create.add_argument("--title", required=True, help="Ceremony title")
    p_create.add_argument("--coordinator", required=True, help="Coordinator identity")
    p_create.add_argument("--start", required=True, help="Start (ISO 8601, UTC if naive)")
    p_create.add_argument("--end", required=True, help="End (ISO 8601, UTC if naive)")
    p_create.add_argument(
        "--mechanism", default="fixed",
        choices=[m.value for m in TimeoutMechanism],
        help="Timeout mechanism (default: fixed)",
    )
    p_create.add_argument("--window-minutes", type=int, default=60, help="Fixed window (default: 60)")
    p_create.add_argument("--threshold-pct", type=int, default=20, help="Dynamic threshold (default: 20)")
    p_create.add_argument("--penalty-minutes", type=int, default=10, help="Lock-out after eviction (default: 10)")
    p_create.add_argument("--required", type=int, help="Contributions that complete a circuit")

    # add-circuit
    p_circuit = sub.add_parser("add-circuit", help="Register a circuit")
    p_circuit.add_argument("--ceremony", required=True, help="Ceremony ID")
    p_circuit.add_argument("--name", required=True, help="Circuit name")
    p_circuit.add_argument("--constraints", type=int, required=True)
    p_circuit.add_argument("--wires", type=int, required=True)
    p_circuit.add_argument("--pot", type=int, required=True, help="Powers of tau exponent")
    p_circuit.add_argument("--curve", default="bn128")
    p_circuit.add_argument("--zkey-size", type=int, help="Genesis zkey size in bytes")
    p_circuit.add_argument("--position", type=int, help="Sequence position (default: next)")

    # lifecycle
    p_open = sub.add_parser("open-ceremony", help="Open a scheduled ceremony")
    p_open.add_argument("--id", required=True, help="Ceremony ID")
    p_close = sub.add_parser("close-ceremony", help="End the contribution period")
    p_close.add_argument("--id", required=True, help="Ceremony ID")
    p_final = sub.add_parser("finalize", help="Finalize a ceremony")
    p_final.add_argument("--id", required=True, help="Ceremony ID")
    p_final.add_argument("--coordinator", required=True, help="Coordinator identity")

    # supervision
    p_sweep = sub.add_parser("sweep", help="Evict expired locks")
    p_sweep.add_argument("--watch", action="store_true", help="Keep sweeping")
    p_sweep.add_argument("--interval", type=float, default=30.0, help="Seconds between sweeps (default: 30)")
    p_sweep.add_argument("--max-iterations", type=int, default=0, help="Stop after N sweeps (0: forever)")
    sub.add_parser("reconcile", help="Re-arm timers from persisted locks")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "create-ceremony": cmd_create_ceremony,
        "add-circuit": cmd_add_circuit,
        "open-ceremony": cmd_open_ceremony,
        "close-ceremony": cmd_close_ceremony,
        "finalize": cmd_finalize,
        "sweep": cmd_sweep,
        "reconcile": cmd_reconcile,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
