"""Interactive security console."""

import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, Field

from .analyzer import VulnerabilityAnalyzer
from .branches import BranchManager
from .display import (
    BOLD,
    RESET,
    format_apply_result,
    format_branch_details,
    format_branches,
    format_merge_result,
    format_report_summary,
    format_severity_counts,
    format_unit_summary,
    format_vulnerabilities_table,
)
from .models import AlertVulnerability, AnalyzedVulnerability, RemediationBranch, Severity, UnitScan
from .notifications import NotificationDispatcher, emergency_alert, sample_alert
from .orchestrator import UpdateMode, UpdateOrchestrator
from .report import build_report, write_report
from .runner import CommandRunner
from .scanner import discover_manifests, scan_units
from .scanners.external import load_external_findings

logger = logging.getLogger(__name__)


class ConsoleState(str, Enum):
    MENU = "menu"
    EXITED = "exited"


class Action(str, Enum):
    VIEW_VULNERABILITIES = "view_vulnerabilities"
    MANAGE_BRANCHES = "manage_branches"
    PERFORM_ACTIONS = "perform_actions"
    RUN_SCAN = "run_scan"
    CONFIGURE_NOTIFICATIONS = "configure_notifications"
    EMERGENCY_RESPONSE = "emergency_response"
    REFRESH = "refresh"
    INVALID = "invalid"
    QUIT = "quit"
    NONE = "none"


MENU_KEYS = {
    "1": Action.VIEW_VULNERABILITIES,
    "v": Action.VIEW_VULNERABILITIES,
    "2": Action.MANAGE_BRANCHES,
    "b": Action.MANAGE_BRANCHES,
    "3": Action.PERFORM_ACTIONS,
    "a": Action.PERFORM_ACTIONS,
    "4": Action.RUN_SCAN,
    "s": Action.RUN_SCAN,
    "5": Action.CONFIGURE_NOTIFICATIONS,
    "n": Action.CONFIGURE_NOTIFICATIONS,
    "6": Action.EMERGENCY_RESPONSE,
    "e": Action.EMERGENCY_RESPONSE,
    "r": Action.REFRESH,
    "refresh": Action.REFRESH,
    "q": Action.QUIT,
    "quit": Action.QUIT,
    "exit": Action.QUIT,
}

MENU_TEXT = """\
Available Actions
------------------------------
[1/v] View Vulnerabilities
[2/b] Manage Branches
[3/a] Perform Actions
[4/s] Run Security Scan
[5/n] Configure Notifications
[6/e] Emergency Response
[r]   Refresh Data
[q]   Quit
"""


def transition(state: ConsoleState, choice: str) -> tuple[ConsoleState, Action]:
    """Map a menu choice to the next state and the workflow to run."""
    if state == ConsoleState.EXITED:
        return ConsoleState.EXITED, Action.NONE
    action = MENU_KEYS.get(choice.strip().lower(), Action.INVALID)
    if action == Action.QUIT:
        return ConsoleState.EXITED, Action.QUIT
    return ConsoleState.MENU, action


class SessionContext(BaseModel):
    """What the console has loaded this session; rebuilt on refresh."""

    scans: list[UnitScan] = Field(default_factory=list)
    branches: list[RemediationBranch] = Field(default_factory=list)

    def severity_counts(self) -> dict[Severity, int]:
        counts = {severity: 0 for severity in Severity}
        for scan in self.scans:
            for record in scan.vulnerabilities:
                counts[record.severity] += 1
        return counts

    def vulnerabilities(self) -> list[tuple[UnitScan, AnalyzedVulnerability]]:
        pairs = [(scan, vuln) for scan in self.scans for vuln in scan.analyzed]
        return sorted(pairs, key=lambda pair: -pair[1].severity.rank)


class _Abort(Exception):
    """Operator closed input at a prompt."""


class InteractiveConsole:
    """
    Menu-driven front end over scanning, remediation, branches and alerts.

    One workflow runs at a time. Closing input (EOF or Ctrl-C) at any
    prompt ends the session without running the pending action.
    """

    def __init__(
        self,
        paths: list[Path],
        runner: CommandRunner,
        orchestrator: UpdateOrchestrator,
        branch_manager: BranchManager,
        dispatcher: NotificationDispatcher,
        reports_dir: Path,
        analyzer: Optional[VulnerabilityAnalyzer] = None,
        base: Optional[Path] = None,
        check_outdated: bool = True,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
    ):
        self.paths = paths
        self.runner = runner
        self.orchestrator = orchestrator
        self.branch_manager = branch_manager
        self.dispatcher = dispatcher
        self.reports_dir = Path(reports_dir)
        self.analyzer = analyzer or VulnerabilityAnalyzer(orchestrator.policy)
        self.base = base
        self.check_outdated = check_outdated
        self.input_fn = input_fn
        self.output = output_fn
        self.state = ConsoleState.MENU
        self.context = SessionContext()
        self._handlers = {
            Action.VIEW_VULNERABILITIES: self.show_vulnerabilities,
            Action.MANAGE_BRANCHES: self.manage_branches,
            Action.PERFORM_ACTIONS: self.perform_actions,
            Action.RUN_SCAN: self.run_scan,
            Action.CONFIGURE_NOTIFICATIONS: self.configure_notifications,
            Action.EMERGENCY_RESPONSE: self.emergency_response,
            Action.REFRESH: self.refresh,
        }

    def prompt(self, question: str) -> str:
        try:
            return self.input_fn(question).strip()
        except (EOFError, KeyboardInterrupt):
            raise _Abort()

    def confirm(self, question: str) -> bool:
        return self.prompt(question).lower() in ("y", "yes")

    def refresh(self) -> None:
        self.output("Loading security data...")
        units = discover_manifests(self.paths, self.base)
        external = load_external_findings(self.reports_dir)
        scans = scan_units(
            units,
            self.runner,
            self.analyzer,
            check_outdated=self.check_outdated,
            external_findings=external,
        )
        branches = self.branch_manager.list_security_branches()
        self.context = SessionContext(scans=scans, branches=branches)
        self.output("Security data loaded")

    def render_summary(self) -> None:
        counts = self.context.severity_counts()
        self.output(f"\n{BOLD}Security Status Overview{RESET}")
        self.output("-" * 50)
        self.output(format_severity_counts(counts))
        self.output(f"   Security Branches: {len(self.context.branches)}\n")
        if counts[Severity.CRITICAL]:
            self.output("CRITICAL VULNERABILITIES REQUIRE IMMEDIATE ATTENTION!\n")

    def run(self) -> None:
        try:
            self.refresh()
        except _Abort:
            return

        while self.state != ConsoleState.EXITED:
            self.render_summary()
            self.output(MENU_TEXT)
            try:
                choice = self.prompt("Select option: ")
                self.state, action = transition(self.state, choice)
                self.step(action)
            except _Abort:
                self.state = ConsoleState.EXITED
        self.output("Goodbye!")

    def step(self, action: Action) -> None:
        if action == Action.INVALID:
            self.output("Invalid option. Please try again.\n")
            return
        handler = self._handlers.get(action)
        if handler is not None:
            handler()

    def _pick(self, items: list, label: str) -> Optional[int]:
        choice = self.prompt(f"Enter {label} number (or 'back'): ")
        if choice.lower() in ("", "b", "back"):
            return None
        try:
            index = int(choice) - 1
        except ValueError:
            index = -1
        if 0 <= index < len(items):
            return index
        self.output(f"Invalid {label} selection")
        return None

    def show_vulnerabilities(self) -> None:
        pairs = self.context.vulnerabilities()
        if not pairs:
            self.output("No vulnerabilities found!")
            return
        for scan in self.context.scans:
            if scan.analyzed:
                self.output(format_vulnerabilities_table(scan.analyzed, f"{scan.unit.name} vulnerabilities"))

        index = self._pick(pairs, "vulnerability")
        if index is None:
            return
        scan, vuln = pairs[index]
        self.output(f"\nActions for {vuln.package} ({scan.unit.name})")
        self.output("[1] Accept fix\n[2] Ignore for now\n[3] Get more information")
        action = self.prompt("Select action: ")
        if action == "1":
            self.accept_fix(scan, vuln)
        elif action == "2":
            self.output("Vulnerability ignored for this session")
        elif action == "3":
            record = vuln.record
            self.output(f"{record.id}: {record.title}")
            self.output(f"Severity: {record.severity.value}, published {vuln.age_in_days} days ago")
            self.output(f"Affected: {record.vulnerable_range}, patched: {record.patched_range or 'none'}")
            if record.url:
                self.output(f"More: {record.url}")

    def accept_fix(self, scan: UnitScan, vuln: AnalyzedVulnerability) -> None:
        plan = self.orchestrator.build_plan(scan.unit, [vuln])
        if not plan:
            self.output("No automatic fix available for this vulnerability")
            return
        entry = plan[0]
        if not self.confirm(f"Update {entry.package} {entry.current} -> {entry.target}? [y/n]: "):
            return
        result = self.orchestrator.apply(scan.unit, plan)
        self.output(format_apply_result(result))

    def _pick_branch(self) -> Optional[RemediationBranch]:
        branches = self.context.branches
        for number, branch in enumerate(branches, start=1):
            self.output(f"{number}. {branch.name} ({branch.source.value}, {branch.locality.value})")
        index = self._pick(branches, "branch")
        return branches[index] if index is not None else None

    def manage_branches(self) -> None:
        self.output(format_branches(self.context.branches))
        if not self.context.branches:
            return
        self.output("\n[v] View branch details\n[m] Merge specific branch\n[a] Auto-merge safe branches")
        choice = self.prompt("Select action: ").lower()

        if choice == "v":
            branch = self._pick_branch()
            if branch:
                self.output(format_branch_details(self.branch_manager.get_branch_details(branch.name)))
        elif choice == "m":
            branch = self._pick_branch()
            if branch:
                self.output(format_branch_details(self.branch_manager.get_branch_details(branch.name)))
                delete = self.confirm("Delete the branch after a successful merge? [y/n]: ")
                result = self.branch_manager.merge_branch(branch.name, self.confirm, delete_after=delete)
                self.output(format_merge_result(result))
        elif choice == "a":
            results = self.branch_manager.auto_merge_safe_branches(self.context.branches, self.confirm)
            for result in results:
                self.output(format_merge_result(result))

    def perform_actions(self) -> None:
        self.output("[1] Auto-update security fixes\n[2] Interactive update\n[3] Generate security report")
        choice = self.prompt("Select action: ")
        if choice == "1":
            self._remediate(UpdateMode.AUTO)
        elif choice == "2":
            self._remediate(UpdateMode.INTERACTIVE)
        elif choice == "3":
            self._write_report()

    def _remediate(self, mode: UpdateMode, severities: Optional[frozenset[Severity]] = None) -> None:
        results = self.orchestrator.remediate(self.context.scans, mode, self.prompt, severities)
        for result in results:
            self.output(format_apply_result(result))
        self.output("Run a scan to refresh the security status")

    def _write_report(self) -> None:
        report = build_report(self.context.scans, project=(self.base or Path.cwd()).name)
        path = write_report(report, self.reports_dir, dry_run=self.orchestrator.dry_run)
        self.output(format_report_summary(report))
        if path:
            self.output(f"Security report saved: {path}")

    def run_scan(self) -> None:
        self.refresh()
        for scan in self.context.scans:
            self.output(format_unit_summary(scan))

    def configure_notifications(self) -> None:
        self.output("Current Configuration:")
        for channel, enabled in self.dispatcher.status().items():
            self.output(f"   {channel}: {'enabled' if enabled else 'disabled'}")
        if self.confirm("Send a test alert? [y/n]: "):
            for result in self.dispatcher.dispatch(sample_alert()):
                status = "sent" if result.delivered else f"failed ({result.error})"
                self.output(f"   {result.channel}: {status}")

    def emergency_response(self) -> None:
        self.output("EMERGENCY RESPONSE\n")
        self.output("[1] Auto-fix all critical vulnerabilities")
        self.output("[2] Send emergency notifications")
        self.output("[3] Generate emergency report")
        choice = self.prompt("Select emergency action: ")

        critical = [
            (scan, vuln) for scan, vuln in self.context.vulnerabilities() if vuln.severity == Severity.CRITICAL
        ]
        if choice == "1":
            if not critical:
                self.output("No critical vulnerabilities to fix")
                return
            self.output(f"Found {len(critical)} critical vulnerabilities")
            if self.confirm("Auto-fix all? (y/N): "):
                self._remediate(UpdateMode.AUTO, frozenset({Severity.CRITICAL}))
        elif choice == "2":
            alert = emergency_alert(
                [
                    AlertVulnerability(package=v.package, severity=v.severity, title=v.record.title)
                    for _, v in critical
                ]
            )
            for result in self.dispatcher.dispatch(alert):
                status = "sent" if result.delivered else f"failed ({result.error})"
                self.output(f"   {result.channel}: {status}")
        elif choice == "3":
            self._write_report()
