"""batchgate CLI: command-line interface for the batch lifecycle.

Usage:
    batchgate --supervisor sup-1 status
    batchgate set-tier --as sup-1 --principal op-1 --tier 3
    batchgate set-requirement --as sup-1 --vessel V-7 --tier 3
    batchgate grant-role --as sup-1 --principal qc-1 --role QC_TECH
    batchgate create-batch --as sup-1 --id B-001
    batchgate start-batch --as op-1 --id B-001 --vessel V-7
    batchgate log-update --as op-1 --id B-001 --out-of-spec
    batchgate finalize --as qc-1 --id B-001 --approve
    batchgate ship --as sup-1 --id B-001
    batchgate toggle-breaker --as sup-1
    batchgate events
    batchgate anchor

State lives in --data (events.jsonl + state.json). --supervisor is only
needed the first time, before state.json exists.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from batchgate.config import DEFAULT_CONFIG_PATH, GateConfig
from batchgate.engine.lifecycle import BatchLifecycleStateMachine
from batchgate.logging_config import configure_logging
from batchgate.models.batch import ActionResult, Role
from batchgate.persistence.event_log import AuditEventEmitter
from batchgate.persistence.state_store import StateStore


ROOT = Path(__file__).resolve().parents[2]
DEFAULT_DATA = ROOT / "data"


def _make_state_machine(args: argparse.Namespace) -> BatchLifecycleStateMachine:
    """Create a state machine with durable persistence."""
    data_dir: Path = args.data
    data_dir.mkdir(parents=True, exist_ok=True)
    config = GateConfig.from_file(args.config) if args.config.exists() else GateConfig.default()
    return BatchLifecycleStateMachine(
        supervisor=args.supervisor,
        config=config,
        event_log=AuditEventEmitter(storage_path=data_dir / "events.jsonl"),
        state_store=StateStore(storage_path=data_dir / "state.json"),
    )


def _parse_at(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _report(result: ActionResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, default=str))
        return 0
    kind = result.rejection.value if result.rejection else "error"
    print(f"Rejected ({kind}): {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def _require_supervisor(sm: BatchLifecycleStateMachine, principal: str) -> bool:
    if principal.strip() != sm.supervisor:
        print(f"Rejected (not_supervisor): {principal} is not the supervisor", file=sys.stderr)
        return False
    return True


def cmd_status(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    print(json.dumps(sm.status(), indent=2))
    return 0


def cmd_create_batch(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    return _report(sm.create_batch(args.id, principal=args.principal, now=_parse_at(args.at)))


def cmd_start_batch(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    return _report(sm.start_batch(
        args.id, vessel_id=args.vessel, principal=args.principal, now=_parse_at(args.at),
    ))


def cmd_log_update(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    return _report(sm.log_process_update(
        args.id, spec_good=not args.out_of_spec, principal=args.principal,
        now=_parse_at(args.at),
    ))


def cmd_manager_bypass(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    return _report(sm.manager_bypass(
        args.id, principal=args.principal, note=args.note or "", now=_parse_at(args.at),
    ))


def cmd_submit_qc(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    return _report(sm.submit_for_quality_check(
        args.id, principal=args.principal, now=_parse_at(args.at),
    ))


def cmd_finalize(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    return _report(sm.finalize_batch(
        args.id, approved=args.approve, principal=args.principal, now=_parse_at(args.at),
    ))


def cmd_ship(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    return _report(sm.approve_for_shipping(
        args.id, principal=args.principal, now=_parse_at(args.at),
    ))


def cmd_toggle_breaker(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    return _report(sm.toggle_circuit_breaker(principal=args.principal, now=_parse_at(args.at)))


def cmd_set_tier(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    if not _require_supervisor(sm, args.principal):
        return 1
    try:
        sm.tiers.set_tier(args.target, args.tier)
    except ValueError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    warning = sm.save_registries()
    print(json.dumps({"principal": args.target, "tier": args.tier, "warning": warning}))
    return 0


def cmd_set_requirement(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    if not _require_supervisor(sm, args.principal):
        return 1
    try:
        sm.tiers.set_requirement(args.vessel, args.tier)
    except ValueError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    warning = sm.save_registries()
    print(json.dumps({"vessel_id": args.vessel, "requirement": args.tier, "warning": warning}))
    return 0


def cmd_grant_role(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    if not _require_supervisor(sm, args.principal):
        return 1
    try:
        sm.roles.grant(args.target, Role(args.role))
    except ValueError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    warning = sm.save_registries()
    print(json.dumps({"principal": args.target, "role": args.role, "warning": warning}))
    return 0


def cmd_events(args: argparse.Namespace) -> int:
    sm = _make_state_machine(args)
    for event in sm.event_log.events():
        if args.id and event.batch_id != args.id:
            continue
        print(json.dumps(event.to_dict(), sort_keys=True))
    return 0


def cmd_anchor(args: argparse.Namespace) -> int:
    """Anchor the audit chain head on Ethereum."""
    from dotenv import load_dotenv
    from batchgate.crypto.anchor import anchor_audit_log

    load_dotenv(ROOT / ".env")
    rpc_url = os.getenv("BATCHGATE_RPC_URL")
    private_key = os.getenv("BATCHGATE_PRIVATE_KEY")
    if not rpc_url or not private_key:
        print("Failed: missing BATCHGATE_RPC_URL and/or BATCHGATE_PRIVATE_KEY in .env", file=sys.stderr)
        return 1

    sm = _make_state_machine(args)
    try:
        record = anchor_audit_log(sm.event_log, rpc_url=rpc_url, private_key=private_key)
    except ValueError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(json.dumps(record.__dict__, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="batchgate",
        description="batchgate: permissioned batch lifecycle CLI",
    )
    parser.add_argument(
        "--config", type=Path, default=DEFAULT_CONFIG_PATH,
        help="Path to gate_params.json (default: config/gate_params.json)",
    )
    parser.add_argument(
        "--data", type=Path, default=DEFAULT_DATA,
        help="Directory holding events.jsonl and state.json (default: data/)",
    )
    parser.add_argument(
        "--supervisor",
        help="Supervisor principal (required until state.json exists)",
    )
    parser.add_argument(
        "--log-level", default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    sub = parser.add_subparsers(dest="command")

    def action(
        name: str, help_text: str, needs_batch: bool = True, timed: bool = True,
    ) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--as", dest="principal", required=True, help="Acting principal")
        if timed:
            p.add_argument("--at", help="ISO-8601 timestamp (default: now, UTC)")
        if needs_batch:
            p.add_argument("--id", required=True, help="Batch ID")
        return p

    sub.add_parser("status", help="Show system status")

    action("create-batch", "Create a scheduled batch")

    p_start = action("start-batch", "Start a batch on a vessel")
    p_start.add_argument("--vessel", required=True, help="Vessel ID")

    p_log = action("log-update", "Log a telemetry update")
    p_log.add_argument("--out-of-spec", action="store_true", help="Reading is out of spec")

    p_bypass = action("manager-bypass", "Record a manager override")
    p_bypass.add_argument("--note", help="Witness note")

    action("submit-qc", "Submit a batch for quality check")

    p_fin = action("finalize", "Record the QC decision")
    p_fin.add_argument("--approve", action="store_true", help="QC approves (default: reject)")

    action("ship", "Approve a batch for shipping")
    action("toggle-breaker", "Flip the emergency halt", needs_batch=False)

    p_tier = action("set-tier", "Assign an operator tier", needs_batch=False, timed=False)
    p_tier.add_argument("--principal", dest="target", required=True, help="Operator")
    p_tier.add_argument("--tier", type=int, required=True)

    p_req = action("set-requirement", "Set a vessel tier requirement", needs_batch=False, timed=False)
    p_req.add_argument("--vessel", required=True, help="Vessel ID")
    p_req.add_argument("--tier", type=int, required=True)

    p_role = action("grant-role", "Grant a role", needs_batch=False, timed=False)
    p_role.add_argument("--principal", dest="target", required=True, help="Grantee")
    p_role.add_argument("--role", required=True, choices=[r.value for r in Role])

    p_events = sub.add_parser("events", help="Print the audit trail as JSON lines")
    p_events.add_argument("--id", help="Only events for this batch")

    sub.add_parser("anchor", help="Anchor the audit chain head on Ethereum")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    configure_logging(args.log_level)

    commands = {
        "status": cmd_status,
        "create-batch": cmd_create_batch,
        "start-batch": cmd_start_batch,
        "log-update": cmd_log_update,
        "manager-bypass": cmd_manager_bypass,
        "submit-qc": cmd_submit_qc,
        "finalize": cmd_finalize,
        "ship": cmd_ship,
        "toggle-breaker": cmd_toggle_breaker,
        "set-tier": cmd_set_tier,
        "set-requirement": cmd_set_requirement,
        "grant-role": cmd_grant_role,
        "events": cmd_events,
        "anchor": cmd_anchor,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        return handler(args)
    except ValueError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
