"""regraft CLI.

Principles:
- Safe by default: every destructive command works on a temp branch
  behind a verified backup bundle.
- Status lines go to stdout, diagnostics to stderr.
- Exit codes: 0 success, 1 failure, 2 conflict left for manual resolution.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from .. import __version__
from ..config.types import ReconstructMode
from ..core.controller import RegraftController
from ..core.date_ledger import ApplyStatus, DateLedger
from ..core.errors import ConflictError, RegraftError
from ..core.harness import HarnessReport, HarnessState
from ..core.inspector import CommitRange
from ..core.preserve import PreserveHalted
from ..core.signing import SignAndVerify, SigningIdentity
from ..utils.dates import utc_stamp
from ..utils.env import get_repo_override
from ..utils.git import GitError
from ..utils.log import log_warning


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFLICT = 2

DEFAULT_GC_KEEP = 20


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="regraft",
        description="regraft - rewrite git history safely: rebuild, sign, drop, restore",
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output",
    )
    parser.add_argument(
        "--repo",
        "-C",
        default=None,
        help="Repository to operate on (default: $REGRAFT_REPO or cwd)",
    )

    subparsers = parser.add_subparsers(dest="command")

    harness = subparsers.add_parser("harness", help="Run drop/sign on a temp branch with backup and rollback")
    harness.add_argument("operation", choices=["drop", "sign"])
    harness.add_argument("argument", help="Commit to drop, or range to sign (A..B | A | --root)")
    harness.add_argument("--dry-run", action="store_true", help="Back up and stop without rewriting")
    harness.add_argument("--cleanup", action="store_true", default=None, help="Delete the temp branch on success")
    harness.add_argument("--auto-resolve", choices=["ours", "theirs"], help="Resolve drop conflicts automatically")
    _add_mode(harness)
    _add_allow_unsigned(harness)
    harness.add_argument(
        "--restore-dates",
        action="store_true",
        help="Re-apply original timestamps (and signatures) after a drop",
    )

    preserve = subparsers.add_parser("preserve", help="Rebuild and sign a range commit by commit")
    preserve.add_argument("range", nargs="?", default="", help="A..B | A | --root (default: whole history)")
    _add_mode(preserve)
    preserve.add_argument("--branch", help="Branch receiving the result")
    preserve.add_argument("--resume", metavar="MAP", help="Continue a halted run from its map file")
    _add_allow_unsigned(preserve)

    reconstruct = subparsers.add_parser("reconstruct", help="Rebuild a range without signing")
    reconstruct.add_argument("range", nargs="?", default="", help="A..B | A | --root")
    _add_mode(reconstruct)
    reconstruct.add_argument("--branch", help="Branch receiving the result")

    ledger = subparsers.add_parser("ledger", help="Capture or apply original commit timestamps")
    ledger_sub = ledger.add_subparsers(dest="ledger_command")
    capture = ledger_sub.add_parser("capture", help="Record timestamps for a range")
    capture.add_argument("range", nargs="?", default="")
    capture.add_argument("--ledger", required=True, help="Ledger file to write")
    apply_next = ledger_sub.add_parser("apply-next", help="Amend HEAD to the next recorded timestamp and sign it")
    apply_next.add_argument("--ledger", required=True, help="Ledger file to consume")
    apply_next.add_argument(
        "--replayed",
        action="store_true",
        help="Use the entry of the commit the running rebase just replayed (for rebase -x)",
    )
    apply_next.add_argument("--drift-tolerance", type=int, default=None)
    apply_next.add_argument("--signing-key", default=None)
    _add_allow_unsigned(apply_next)

    resolve = subparsers.add_parser("resolve", help="Resolve a stalled rebase/merge by preference")
    resolve.add_argument("preference", choices=["ours", "theirs"])
    resolve.add_argument("--max-iterations", type=int, default=None)

    backup = subparsers.add_parser("backup", help="Manage backup bundles")
    backup_sub = backup.add_subparsers(dest="backup_command")
    create = backup_sub.add_parser("create", help="Bundle refs")
    create.add_argument("refs", nargs="*", help="Refs to capture (default: all)")
    create.add_argument("--operation", default="manual", help="Name prefix for the bundle")
    backup_sub.add_parser("list", help="List backups")
    verify = backup_sub.add_parser("verify", help="Verify a backup bundle")
    verify.add_argument("name")
    restore = backup_sub.add_parser("restore", help="Restore refs from a backup bundle")
    restore.add_argument("name")
    tag = backup_sub.add_parser("tag", help="Tag a branch tip as backup/<branch>-<ts>")
    tag.add_argument("branch")

    promote = subparsers.add_parser("promote", help="Move a branch onto a verified result")
    promote.add_argument("source", help="Result ref, usually a temp branch")
    promote.add_argument("target", help="Branch to repoint")

    sync = subparsers.add_parser("sync-worktrees", help="Repoint a branch in every worktree")
    sync.add_argument("branch")
    sync.add_argument("target")

    gc = subparsers.add_parser("gc", help="Delete temp/backup refs and old bundles")
    gc.add_argument("--merged", action="store_true", help="Also delete branches merged into the base branch")
    gc.add_argument("--keep-backups", type=int, default=DEFAULT_GC_KEEP, help="Bundles to keep")
    gc.add_argument("--dry-run", action="store_true", help="Only list what would be deleted")

    subparsers.add_parser("status", help="Show repository and backup status")

    return parser


def _add_mode(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--mode",
        choices=[m.value for m in ReconstructMode],
        default=ReconstructMode.PRESERVE.value,
        help="Keep merge parents (preserve) or build a single-parent chain (linearise)",
    )


def _add_allow_unsigned(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--allow-unsigned",
        action="store_true",
        help="RECOVERY ONLY: continue past failed signature/timestamp checks",
    )


def main(args: list[str] | None = None) -> int:
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.debug:
        os.environ["REGRAFT_DEBUG"] = "1"

    if not parsed.command:
        parser.print_help()
        return EXIT_FAILED

    handlers = {
        "harness": cmd_harness,
        "preserve": cmd_preserve,
        "reconstruct": cmd_reconstruct,
        "ledger": cmd_ledger,
        "resolve": cmd_resolve,
        "backup": cmd_backup,
        "promote": cmd_promote,
        "sync-worktrees": cmd_sync_worktrees,
        "gc": cmd_gc,
        "status": cmd_status,
    }

    try:
        controller = RegraftController(_determine_repo_root(parsed.repo))
        return handlers[parsed.command](parsed, controller)
    except ConflictError as e:
        print(f"Conflict: {e}", file=sys.stderr)
        return EXIT_CONFLICT
    except RegraftError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except GitError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED


def cmd_harness(args: argparse.Namespace, controller: RegraftController) -> int:
    if args.allow_unsigned:
        log_warning("--allow-unsigned set: failed signature/timestamp checks will NOT stop this run")
    report = controller.run_harness(
        args.operation,
        args.argument,
        dry_run=args.dry_run,
        cleanup=args.cleanup,
        auto_resolve=args.auto_resolve,
        mode=args.mode,
        allow_unsigned=args.allow_unsigned,
        restore_dates=args.restore_dates,
    )
    return _print_harness_report(report)


def cmd_preserve(args: argparse.Namespace, controller: RegraftController) -> int:
    if args.allow_unsigned:
        log_warning("--allow-unsigned set: failed signature/timestamp checks will NOT stop this run")
    if not controller.inspector.is_clean():
        print("Error: working tree has uncommitted changes", file=sys.stderr)
        return EXIT_FAILED

    try:
        run = controller.preserve(args.allow_unsigned).run(
            CommitRange.parse(args.range),
            ReconstructMode(args.mode),
            branch=args.branch,
            resume_map=args.resume,
        )
    except PreserveHalted as e:
        print(f"Error: {e}", file=sys.stderr)
        print(f"Map: {e.run.map_path}", file=sys.stderr)
        print(f"Log: {e.run.log_path}", file=sys.stderr)
        print(f"Resume with: regraft preserve {args.range} --resume {e.run.map_path}", file=sys.stderr)
        return EXIT_FAILED

    print(f"Branch: {run.branch}")
    print(f"Tip: {run.tip}")
    print(f"Map: {run.map_path}")
    print(f"Log: {run.log_path}")
    for entry in run.overridden:
        print(f"OVERRIDDEN: {entry.original_id} -> {entry.current_id} (sig {entry.signature_status})")
    return EXIT_OK


def cmd_reconstruct(args: argparse.Namespace, controller: RegraftController) -> int:
    branch = args.branch or f"{controller.config.temp_prefix}/reconstruct-{utc_stamp()}"
    result = controller.reconstructor().reconstruct(
        CommitRange.parse(args.range),
        ReconstructMode(args.mode),
        branch=branch,
    )
    print(f"Branch: {branch}")
    print(f"Tip: {result.tip}")
    print(f"Commits: {len(result.order)}")
    return EXIT_OK


def cmd_ledger(args: argparse.Namespace, controller: RegraftController) -> int:
    if args.ledger_command == "capture":
        ledger = DateLedger.capture(args.ledger, controller.inspector, CommitRange.parse(args.range))
        print(f"Captured {len(ledger)} timestamps into {ledger.path}")
        return EXIT_OK

    if args.ledger_command == "apply-next":
        identity = SigningIdentity.from_git_config(
            controller.inspector, key=args.signing_key or controller.config.signing_key
        ).validate()
        tolerance = args.drift_tolerance
        if tolerance is None:
            tolerance = controller.config.drift_tolerance_seconds
        signer = SignAndVerify(
            controller.git,
            identity,
            drift_tolerance=tolerance,
            allow_unsigned=args.allow_unsigned,
        )
        ledger = DateLedger(args.ledger)
        if args.replayed:
            original_id = controller.inspector.replayed_commit()
            if original_id is None:
                log_warning("No replayed commit found; nothing to date")
                return EXIT_OK
            outcome = ledger.apply_for(signer, original_id)
        else:
            outcome = ledger.apply_next(signer)
        if outcome.status == ApplyStatus.APPLIED and outcome.entry and outcome.result:
            print(f"Applied {outcome.entry.timestamp} ({outcome.entry.original_id[:12]} -> {outcome.result.new_id[:12]})")
        elif outcome.status == ApplyStatus.DROPPED:
            print(f"Dropped ledger line ({outcome.remaining} left)")
        elif outcome.status == ApplyStatus.UNMATCHED:
            print(f"No ledger entry for this commit ({outcome.remaining} left)")
        else:
            print("Ledger exhausted")
        return EXIT_OK

    print("Usage: regraft ledger {capture,apply-next}", file=sys.stderr)
    return EXIT_FAILED


def cmd_resolve(args: argparse.Namespace, controller: RegraftController) -> int:
    resolver = controller.resolver()
    if args.max_iterations:
        resolver.max_iterations = args.max_iterations
    outcome = resolver.resolve_all(args.preference)
    print(f"Resolution {outcome.state.value} after {outcome.iterations} iteration(s)")
    for path in outcome.resolved_paths:
        print(f"  {path}")
    if outcome.success:
        return EXIT_OK
    print(f"Error: {outcome.error}", file=sys.stderr)
    return EXIT_CONFLICT


def cmd_backup(args: argparse.Namespace, controller: RegraftController) -> int:
    backups = controller.backups

    if args.backup_command == "create":
        snapshot = backups.snapshot(args.operation, args.refs or "all")
        valid = backups.verify(snapshot)
        print(f"Backup: {backups.bundle_path(snapshot)} ({len(snapshot.refs)} refs, {'verified' if valid else 'INVALID'})")
        return EXIT_OK if valid else EXIT_FAILED

    if args.backup_command == "list":
        snapshots = backups.list()
        if not snapshots:
            print("No backups found.")
            return EXIT_OK
        print("Name                                      Refs  Operation")
        for snapshot in snapshots:
            print(f"{snapshot.name:<41} {len(snapshot.refs):<5} {snapshot.operation}")
        return EXIT_OK

    if args.backup_command == "verify":
        snapshot = backups.get(args.name)
        if snapshot is None:
            print(f"Error: Backup not found: {args.name}", file=sys.stderr)
            return EXIT_FAILED
        valid = backups.verify(snapshot)
        print(f"{args.name}: {'OK' if valid else 'INVALID'}")
        return EXIT_OK if valid else EXIT_FAILED

    if args.backup_command == "restore":
        result = backups.restore(args.name)
        if not result.success:
            print(f"Error: {result.error}", file=sys.stderr)
            return EXIT_FAILED
        print(f"Restored {result.refs_restored} ref(s) from {result.name}")
        return EXIT_OK

    if args.backup_command == "tag":
        print(f"Tagged: {backups.tag(args.branch, prefix=controller.config.backup_prefix)}")
        return EXIT_OK

    print("Usage: regraft backup {create,list,verify,restore,tag}", file=sys.stderr)
    return EXIT_FAILED


def cmd_promote(args: argparse.Namespace, controller: RegraftController) -> int:
    result = controller.promote(args.source, args.target)
    if not result.get("success"):
        print(f"Error: {result.get('error')}", file=sys.stderr)
        return EXIT_FAILED
    print(f"Promoted: {result['branch']} -> {result['target']}")
    print(f"Backup: {result['backup']}")
    print(f"Tag: {result['tag']}")
    return EXIT_OK


def cmd_sync_worktrees(args: argparse.Namespace, controller: RegraftController) -> int:
    result = controller.worktrees().sync(args.branch, args.target)
    print(f"{result.branch} -> {result.target}")
    for path in result.worktrees:
        print(f"  updated worktree {path}")
    return EXIT_OK


def cmd_gc(args: argparse.Namespace, controller: RegraftController) -> int:
    if args.keep_backups < 0:
        print("Error: --keep-backups must be >= 0", file=sys.stderr)
        return EXIT_FAILED
    result = controller.gc(merged=args.merged, keep_backups=args.keep_backups, dry_run=args.dry_run)
    if not result.get("success"):
        print(f"Error: {result.get('error')}", file=sys.stderr)
        return EXIT_FAILED

    verb = "Would delete" if result["dryRun"] else "Deleted"
    for name in result["branches"]:
        print(f"{verb} branch {name}")
    for name in result["tags"]:
        print(f"{verb} tag {name}")
    if not result["dryRun"]:
        print(f"Pruned {result['backupsPruned']} backup(s)")
    return EXIT_OK


def cmd_status(args: argparse.Namespace, controller: RegraftController) -> int:
    status = controller.get_status()
    print(f"Repository: {status.repo_root}")
    print(f"State dir:  {status.state_dir}")
    print(f"Branch:     {status.branch or '(detached)'} at {status.head[:12]}")
    print(f"Clean:      {'yes' if status.clean else 'no'}")
    if status.pending_operation:
        print(f"Pending:    {status.pending_operation}")
    print(f"Backups:    {status.backup_count} (latest: {status.latest_backup or '-'})")
    return EXIT_OK


def _print_harness_report(report: HarnessReport) -> int:
    print(report.render_text(), end="")
    if report.report_path:
        print(f"Report saved: {report.report_path}")

    if report.state == HarnessState.CONFLICTED:
        return EXIT_CONFLICT
    if not report.success:
        if report.error:
            print(f"Error: {report.error}", file=sys.stderr)
        return EXIT_FAILED
    return EXIT_OK


def _determine_repo_root(explicit: str | None) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    return get_repo_override() or Path.cwd()
