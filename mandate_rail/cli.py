"""mandate_rail.cli

Command line interface entry point for mandate-rail.

Design constraints:
- argparse-based.
- Lazy imports: do not import heavy dependencies at parse time.
- Every command that reports a result prints one JSON line on stdout.
  Logs go to stderr.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mandate_rail.core.config import Config

EPILOG = "Nothing moves until the proof says it moved."


@dataclass(frozen=True)
class CliContext:
    repo_root: Path


def _repo_root_from_cwd() -> Path:
    return Path.cwd()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mandate-rail",
        description="Signed AP2 mandates in, verified settlements out.",
        epilog=EPILOG,
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit.",
    )

    sub = parser.add_subparsers(dest="command")

    p_verify = sub.add_parser("verify", help="Verify a mandate envelope (stdin if no source given)")
    src = p_verify.add_mutually_exclusive_group()
    src.add_argument("--file", default=None, help="Path to an envelope JSON file.")
    src.add_argument("--json", default=None, help="Envelope JSON as a string.")

    p_sign = sub.add_parser("sign", help="Sign a mandate payload with AP2_PRIVATE_KEY")
    p_sign.add_argument("--file", required=True, help="Path to a payload JSON file.")
    p_sign.add_argument("--kid", default=None, help="Key id (defaults to mandate.kid).")

    p_settle = sub.add_parser("settle", help="Run one Intent -> Quote -> Payment orchestration")
    p_settle.add_argument("--intent", required=True, help="Path to a signed intent envelope.")
    p_settle.add_argument("--holder", default=None, help="Lease holder id (defaults to agent_id).")
    p_settle.add_argument("--dry-run", action="store_true", help="Build and sign, write nothing.")

    p_posp = sub.add_parser("posp", help="Compute a Proof-of-Settled-Payment score")
    p_posp.add_argument("--agent", default=None, help="Agent id (defaults to agent_id).")
    p_posp.add_argument("--write", action="store_true", help="Also write the proof file.")

    p_run = sub.add_parser("run", help="Run the autonomous control loop")
    p_run.add_argument("--once", action="store_true", help="Run a single tick and exit.")

    sub.add_parser("status", help="Print system status")

    p_api = sub.add_parser("api", help="Start FastAPI server")
    p_api.add_argument("--host", default=None)
    p_api.add_argument("--port", type=int, default=None)

    return parser


def _print_version() -> None:
    from mandate_rail import __version__

    print(f"mandate-rail v{__version__}")


def _emit(obj: Any) -> None:
    print(json.dumps(obj, separators=(",", ":"), default=str))


def _load(ctx: CliContext) -> Config:
    from mandate_rail.core.config import Config
    from mandate_rail.core.logging import configure_logging

    has_config = (ctx.repo_root / "config" / "default.yaml").exists() or (ctx.repo_root / "config" / "user.yaml").exists()
    config = Config.load(ctx.repo_root) if has_config else Config()
    configure_logging(config.logging)
    return config


def _read_json_arg(*, file: str | None, text: str | None) -> Any:
    if file:
        raw = Path(file).read_text(encoding="utf-8")
    elif text is not None:
        raw = text
    else:
        raw = sys.stdin.read()
    return json.loads(raw)


def _cmd_verify(ctx: CliContext, args: argparse.Namespace) -> int:
    from mandate_rail.core.exceptions import MandateError
    from mandate_rail.mandate.keys import env_public_key_resolver
    from mandate_rail.mandate.signer import verify_mandate

    config = _load(ctx)
    try:
        envelope = _read_json_arg(file=args.file, text=args.json)
    except (OSError, ValueError) as e:
        _emit({"ok": False, "error": "invalid_input", "message": str(e)})
        return 1

    try:
        res = verify_mandate(
            envelope,
            clock_skew_ms=config.mandate.clock_skew_ms,
            resolve_public_key=env_public_key_resolver(),
        )
    except MandateError as e:
        _emit({"ok": False, "violations": [], "error": "key_unavailable", "message": str(e)})
        return 0
    _emit(res.as_dict())
    return 0


def _cmd_sign(ctx: CliContext, args: argparse.Namespace) -> int:
    from mandate_rail.core.exceptions import MandateError
    from mandate_rail.mandate.signer import sign_mandate

    config = _load(ctx)
    try:
        payload = _read_json_arg(file=args.file, text=None)
    except (OSError, ValueError) as e:
        print(f"error: could not read payload: {e}", file=sys.stderr)
        return 1
    if not isinstance(payload, dict):
        print("error: payload must be a JSON object", file=sys.stderr)
        return 1

    try:
        envelope = sign_mandate(payload, kid=args.kid or config.mandate.kid)
    except MandateError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    _emit(envelope)
    return 0


def _cmd_settle(ctx: CliContext, args: argparse.Namespace) -> int:
    # Lazy import: pulls in the whole settlement stack.
    import asyncio

    from mandate_rail.core.exceptions import MandateRailError
    from mandate_rail.runtime import build_runtime

    config = _load(ctx)
    try:
        envelope = _read_json_arg(file=args.intent, text=None)
    except (OSError, ValueError) as e:
        _emit({"ok": False, "error": "invalid_input", "message": str(e)})
        return 1

    async def _run() -> dict[str, Any]:
        rt = build_runtime(config)
        try:
            result = await rt.orchestrator().settle(envelope, holder=args.holder, dry_run=bool(args.dry_run))
            return result.as_dict()
        finally:
            await rt.aclose()

    try:
        out = asyncio.run(_run())
    except MandateRailError as e:
        _emit({"ok": False, "error": type(e).__name__, "message": str(e)})
        return 1
    _emit(out)
    return 0


def _cmd_posp(ctx: CliContext, args: argparse.Namespace) -> int:
    from mandate_rail.reputation.posp import ReputationGate

    config = _load(ctx)
    gate = ReputationGate(config.posp)
    proof, check = gate.evaluate(args.agent or config.agent_id)
    out: dict[str, Any] = {"ok": check.ok, "proof": proof.as_dict(), "check": check.as_dict()}
    if args.write:
        out["path"] = str(gate.write(proof))
    _emit(out)
    return 0


def _cmd_run(ctx: CliContext, args: argparse.Namespace) -> int:
    import asyncio

    from mandate_rail.control.loop import STOP_INVARIANT, AutonomousLoop
    from mandate_rail.runtime import build_runtime

    config = _load(ctx)

    async def _run() -> str:
        rt = build_runtime(config)
        try:
            tasks = rt.control_tasks()
            loop = AutonomousLoop(config, tasks, invariants=rt.invariants, journal=rt.journal, dedupe=rt.dedupe)
            loop.install_signal_handlers()
            return await loop.run(once=bool(args.once), on_tick=_emit)
        finally:
            await rt.aclose()

    reason = asyncio.run(_run())
    return 1 if reason == STOP_INVARIANT else 0


def _cmd_status(ctx: CliContext, args: argparse.Namespace) -> int:
    import time

    from mandate_rail.core.dedupe import DedupeStore
    from mandate_rail.core.exceptions import ConfigError
    from mandate_rail.core.journal import Journal, JournalEventType

    start = time.monotonic()

    cfg_user = ctx.repo_root / "config" / "user.yaml"
    cfg = cfg_user if cfg_user.exists() else ctx.repo_root / "config" / "default.yaml"

    try:
        config = _load(ctx)
        config_status = str(cfg)
    except ConfigError as e:
        print(f"- config: {cfg} (error: {e})")
        return 1

    journal_path = config.journal_path
    if journal_path.exists():
        journal = Journal(journal_path)
        try:
            chain_ok = journal.verify_hash_chain()
            failures = journal.entries(event_type=JournalEventType.INVARIANT_FAILURE_V1, limit=20)
        finally:
            journal.close()
        journal_status = f"{journal_path} (chain {'ok' if chain_ok else 'BROKEN'})"
    else:
        failures = []
        journal_status = f"{journal_path} (missing)"

    dedupe = DedupeStore.from_config(config.dedupe)
    stats = dedupe.stats()

    print("mandate-rail status")
    print(f"- uptime: {time.monotonic() - start:.3f}s")
    print(f"- config: {config_status}")
    print(f"- preset: {config.preset}")
    print(f"- journal: {journal_status}")
    print(f"- invariant failures (recent): {len(failures)}")
    for entry in failures:
        print(f"  - {entry.payload.get('invariant')} at {entry.payload.get('at')}")
    print(f"- dedupe: {stats.entries}/{stats.max_entries} entries, ttl {stats.ttl_ms}ms ({stats.path})")
    print(f"- store mode: {config.store.mode}")
    return 0


def _cmd_api(ctx: CliContext, args: argparse.Namespace) -> int:
    config = _load(ctx)

    host = args.host or config.api.host
    port = args.port or config.api.port

    import uvicorn

    uvicorn.run("api.main:app", host=host, port=port, reload=False)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        _print_version()
        return 0

    if not args.command:
        parser.print_help()
        return 2

    ctx = CliContext(repo_root=_repo_root_from_cwd())

    dispatch: dict[str, Callable[[CliContext, argparse.Namespace], int]] = {
        "verify": _cmd_verify,
        "sign": _cmd_sign,
        "settle": _cmd_settle,
        "posp": _cmd_posp,
        "run": _cmd_run,
        "status": _cmd_status,
        "api": _cmd_api,
    }

    fn = dispatch.get(str(args.command))
    if fn is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2

    return int(fn(ctx, args))


if __name__ == "__main__":
    raise SystemExit(main())
