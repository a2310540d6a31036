"""Command-line interface for dependency security remediation."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .analyzer import VulnerabilityAnalyzer
from .branches import BranchManager
from .console import InteractiveConsole
from .display import format_apply_result, format_report_summary, format_unit_summary
from .git_utils import repository_root
from .models import ApplyResult, UnitState
from .notifications import NotificationDispatcher
from .orchestrator import UpdateMode, UpdateOrchestrator
from .policy import SecurityPolicy
from .report import build_report, write_report
from .runner import SubprocessRunner
from .scanner import scan_project, workspace_paths
from .scanners.external import IntegrationStatus, integration_status

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dep-remediation",
        description="Scan npm manifests for vulnerable dependencies and remediate them under policy.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dep-remediation --scan
  dep-remediation --scan --check-outdated --report
  dep-remediation --auto-update --dry-run
  dep-remediation --update client server
  dep-remediation --force-update --exclude react,react-dom
  dep-remediation --aikido
  dep-remediation --interactive
        """,
    )
    parser.add_argument(
        "paths",
        nargs="*",
        help="Unit directories to scan (default: root, npm workspaces, client/ and server/)",
    )
    parser.add_argument("--root", type=str, default=None, help="Project root (default: current directory)")
    parser.add_argument("--scan", action="store_true", help="Run a read-only security scan")
    parser.add_argument("--update", action="store_true", help="Choose updates interactively")

    policy_group = parser.add_mutually_exclusive_group()
    policy_group.add_argument(
        "--auto-update",
        action="store_true",
        help="Apply security fixes for allow-listed severities without prompting",
    )
    policy_group.add_argument(
        "--force-update",
        action="store_true",
        help="Apply every planned update, including outdated packages",
    )

    parser.add_argument("--check-outdated", action="store_true", help="Also query outdated packages")
    parser.add_argument("--report", action="store_true", help="Save a dated JSON security report")
    parser.add_argument("--reports-dir", type=str, default=None, help="Report directory (default: ROOT/reports)")
    parser.add_argument("--aikido", action="store_true", help="Check external scanner integration status")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Do not write manifests, reports or run installs; log intended actions",
    )
    parser.add_argument("--notify", action="store_true", help="Send an alert when high-severity issues are found")
    parser.add_argument(
        "--exclude",
        type=str,
        default="",
        help="Comma-separated packages never updated automatically",
    )
    parser.add_argument("--allow-major", action="store_true", help="Allow outdated updates across major versions")
    parser.add_argument("--interactive", action="store_true", help="Open the interactive security console")
    parser.add_argument("--json", action="store_true", dest="json_output", help="Output results as JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def update_mode(args: argparse.Namespace) -> Optional[UpdateMode]:
    if args.force_update:
        return UpdateMode.FORCED
    if args.auto_update:
        return UpdateMode.AUTO
    if args.update:
        return UpdateMode.INTERACTIVE
    return None


def format_integration_status(status: IntegrationStatus) -> str:
    lines = ["\nExternal Scanner Integration:"]
    if status.configured:
        lines.append(f"   Configuration: {status.config_path}")
    else:
        lines.append(f"   Configuration not found: {status.config_path}")
    lines.append(f"   Repository: {status.repository or 'unknown'}")
    lines.append(f"   Scanner branches: {len(status.scanner_branches)}")
    lines += [f"      - {name}" for name in status.scanner_branches]
    lines.append(f"   Dependency bot branches: {len(status.dependency_branches)}")
    lines += [f"      - {name}" for name in status.dependency_branches]
    lines.append(f"   Latest external report: {status.latest_report or 'none'}")
    return "\n".join(lines)


def run(args: argparse.Namespace) -> int:
    root = Path(args.root).resolve() if args.root else Path.cwd()
    if not root.is_dir():
        print(f"Error: Root is not a directory: {root}", file=sys.stderr)
        return 1

    reports_dir = Path(args.reports_dir) if args.reports_dir else root / "reports"
    paths = [Path(p) if Path(p).is_absolute() else root / p for p in args.paths] or None
    excluded = frozenset(p.strip() for p in args.exclude.split(",") if p.strip())

    policy = SecurityPolicy(excluded_packages=excluded, allow_major_upgrades=args.allow_major)
    runner = SubprocessRunner()
    analyzer = VulnerabilityAnalyzer(policy)
    orchestrator = UpdateOrchestrator(
        runner, policy, dry_run=args.dry_run, allow_forced=args.force_update
    )

    repo_root = repository_root(root) or root

    if args.interactive:
        console = InteractiveConsole(
            paths or workspace_paths(root),
            runner,
            orchestrator,
            BranchManager(runner, repo_root),
            NotificationDispatcher(),
            reports_dir,
            analyzer=analyzer,
            base=root,
            check_outdated=True,
        )
        console.run()
        return 0

    output: dict = {}

    if args.aikido:
        branches = BranchManager(runner, repo_root).list_security_branches()
        status = integration_status(root, runner, branches, reports_dir)
        output["integration"] = status.model_dump(mode="json")
        if not args.json_output:
            print(format_integration_status(status))

    mode = update_mode(args)
    wants_scan = args.scan or args.report or args.notify or mode is not None or not args.aikido
    if not wants_scan:
        if args.json_output:
            print(json.dumps(output, indent=2))
        return 0

    logger.info(f"Scanning project: {root}")
    scans = scan_project(
        root,
        runner,
        analyzer,
        check_outdated=args.check_outdated or mode == UpdateMode.FORCED,
        reports_dir=reports_dir,
        paths=paths,
    )
    if not scans:
        logger.warning("No package.json manifests found")

    results: list[ApplyResult] = []
    if mode is not None:
        results = orchestrator.remediate(scans, mode, prompt=input if mode == UpdateMode.INTERACTIVE else None)

    report = build_report(scans, project=root.name)
    if args.report:
        path = write_report(report, reports_dir, dry_run=args.dry_run)
        output["report_path"] = str(path) if path else None

    if args.notify:
        alert = analyzer.escalation_alert(scans)
        if alert is None:
            logger.info("No vulnerabilities at or above the alert threshold")
        else:
            deliveries = NotificationDispatcher().dispatch(alert)
            output["notifications"] = [d.model_dump(mode="json") for d in deliveries]

    if args.json_output:
        output["report"] = report.model_dump(mode="json")
        output["updates"] = [r.model_dump(mode="json") for r in results]
        if args.dry_run:
            output["dry_run_actions"] = orchestrator.dry_run_log
        print(json.dumps(output, indent=2))
    else:
        for scan in scans:
            print(format_unit_summary(scan))
        for result in results:
            print(format_apply_result(result))
        print(format_report_summary(report))

    return 1 if any(r.state == UnitState.FAILED for r in results) else 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        return run(args)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 1
    except Exception as e:
        logger.error(f"Security management failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
