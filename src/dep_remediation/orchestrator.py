"""Remediation planning and manifest updates."""

import json
import logging
import os
import tempfile
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from .errors import ApplyFailure, CommandError
from .models import (
    AnalyzedVulnerability,
    ApplyResult,
    ManifestUnit,
    OutdatedEntry,
    Severity,
    UnitScan,
    UnitState,
    UpdateKind,
    UpdatePlanEntry,
)
from .policy import DEFAULT_POLICY, SecurityPolicy
from .runner import CommandRunner
from .scanners.npm import INSTALL_ARGS, read_manifest
from .versions import extract_version, parse_version, target_constraint, version_delta

logger = logging.getLogger(__name__)

INSTALL_TIMEOUT = 600
VERIFY_ARGS = ["ls", "--depth=0"]

Prompt = Callable[[str], str]


class UpdateMode(str, Enum):
    AUTO = "auto"
    INTERACTIVE = "interactive"
    FORCED = "forced"


_MODE_STATE = {
    UpdateMode.AUTO: UnitState.AUTO,
    UpdateMode.INTERACTIVE: UnitState.INTERACTIVE,
    UpdateMode.FORCED: UnitState.FORCED,
}


def describe_entry(index: int, entry: UpdatePlanEntry) -> str:
    marker = "security" if entry.kind == UpdateKind.SECURITY else "outdated"
    line = f"  {index}. [{marker}] {entry.package}: {entry.current} -> {entry.target}"
    if entry.severity:
        line += f" ({entry.severity.value})"
    return f"{line}\n     {entry.rationale}"


def describe_plan(plan: list[UpdatePlanEntry]) -> str:
    return "\n".join(describe_entry(i, entry) for i, entry in enumerate(plan, start=1))


def write_manifest(manifest_path: Path, content: dict) -> None:
    """
    Replace a manifest atomically.

    The JSON is written to a temporary file in the same directory and
    renamed over the original, so readers never see a partial file.
    """
    fd, tmp_name = tempfile.mkstemp(prefix=".package.", suffix=".json", dir=manifest_path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(content, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, manifest_path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class UpdateOrchestrator:
    """
    Builds remediation plans and applies them to manifests.

    Forced mode updates everything in the plan and is refused unless the
    orchestrator was created with allow_forced=True. In dry-run mode no
    manifest is written and no install is run; intended actions are
    recorded in dry_run_log instead.
    """

    def __init__(
        self,
        runner: CommandRunner,
        policy: SecurityPolicy = DEFAULT_POLICY,
        dry_run: bool = False,
        allow_forced: bool = False,
        verify: bool = True,
    ):
        self.runner = runner
        self.policy = policy
        self.dry_run = dry_run
        self.allow_forced = allow_forced
        self.verify = verify
        self.dry_run_log: list[str] = []
        self.states: dict[str, UnitState] = {}
        self._locks: dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, manifest_path: Path) -> threading.Lock:
        key = Path(manifest_path).resolve()
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def build_plan(
        self,
        unit: ManifestUnit,
        analyzed: Iterable[AnalyzedVulnerability],
        outdated: Iterable[OutdatedEntry] = (),
    ) -> list[UpdatePlanEntry]:
        """
        Turn analyzed vulnerabilities and outdated packages into plan entries.

        Security entries come first, highest severity first. Packages the
        unit does not declare directly are skipped, as are entries whose
        target equals the current constraint.
        """
        security: dict[str, UpdatePlanEntry] = {}
        ordered = sorted(analyzed, key=lambda v: -v.severity.rank)

        for vuln in ordered:
            record = vuln.record
            if record.patched_range is None:
                continue
            current = unit.constraint_for(record.package)
            if current is None:
                logger.debug(f"{record.package} is not a direct dependency of {unit.name}, skipping")
                continue
            version = extract_version(record.patched_range)
            if version is None:
                logger.warning(f"Cannot derive a version from patched range {record.patched_range!r}")
                continue
            if not self._is_upgrade(current, version):
                continue

            entry = UpdatePlanEntry(
                kind=UpdateKind.SECURITY,
                package=record.package,
                rationale=f"{record.severity.value} vulnerability: {record.title}",
                current=current,
                target=target_constraint(current, version),
                severity=record.severity,
                auto_eligible=vuln.auto_eligible,
                source_record_id=record.id,
            )
            existing = security.get(record.package)
            if existing is None or parse_version(entry.target) > parse_version(existing.target):
                if existing is not None:
                    # keep the strongest severity seen for this package
                    entry = entry.model_copy(
                        update={
                            "severity": existing.severity,
                            "auto_eligible": existing.auto_eligible or entry.auto_eligible,
                        }
                    )
                security[record.package] = entry

        plan = list(security.values())

        for item in outdated:
            if item.package in security:
                continue
            current = unit.constraint_for(item.package)
            if current is None:
                continue
            version = self._outdated_version(item, current)
            if version is None:
                continue
            target = target_constraint(current, version)
            if target == current:
                continue
            plan.append(
                UpdatePlanEntry(
                    kind=UpdateKind.OUTDATED,
                    package=item.package,
                    rationale=f"Outdated package (current: {item.current}, latest: {item.latest})",
                    current=current,
                    target=target,
                )
            )

        self.states[unit.name] = UnitState.PLAN_BUILT
        return plan

    @staticmethod
    def _is_upgrade(current: str, version: str) -> bool:
        current_parts = parse_version(current)
        target_parts = parse_version(version)
        if current_parts is None or target_parts is None:
            return target_constraint(current, version) != current
        return target_parts > current_parts

    def _outdated_version(self, item: OutdatedEntry, current: str) -> Optional[str]:
        """
        Pick the version an outdated package should move to.

        The wanted version (highest satisfying the declared range) is
        preferred; latest is used once wanted is already installed. Unless
        the policy allows major upgrades, a candidate that crosses a major
        version falls back to wanted, or is held back entirely.
        """
        wanted = extract_version(item.wanted)
        latest = extract_version(item.latest)
        installed = extract_version(item.current)

        candidate = wanted if wanted and wanted != installed else latest
        if candidate is None:
            return None

        if not self.policy.allow_major_upgrades and version_delta(current, candidate) == "major":
            if wanted and wanted != candidate and version_delta(current, wanted) != "major":
                candidate = wanted
            else:
                logger.info(
                    f"Holding back {item.package}: {current} -> {candidate} is a major upgrade"
                )
                return None

        if not self._is_upgrade(current, candidate):
            return None
        return candidate

    def select(
        self,
        plan: list[UpdatePlanEntry],
        mode: UpdateMode,
        prompt: Optional[Prompt] = None,
    ) -> list[UpdatePlanEntry]:
        """Choose which plan entries to apply under a policy."""
        if mode == UpdateMode.AUTO:
            selected = []
            for entry in plan:
                if entry.kind != UpdateKind.SECURITY or not entry.auto_eligible:
                    continue
                if entry.package in self.policy.excluded_packages:
                    logger.info(f"Skipping excluded package: {entry.package}")
                    continue
                selected.append(entry)
            return selected

        if mode == UpdateMode.FORCED:
            if not self.allow_forced:
                raise ValueError("Forced updates must be enabled explicitly (allow_forced=True)")
            logger.warning(f"Force-updating all {len(plan)} plan entries")
            return list(plan)

        if prompt is None:
            raise ValueError("Interactive updates need a prompt")
        return self._select_interactively(plan, prompt)

    def _select_interactively(self, plan: list[UpdatePlanEntry], prompt: Prompt) -> list[UpdatePlanEntry]:
        question = (
            f"{describe_plan(plan)}\n\n"
            "Update options: [a]ll, [s]ecurity only, [i]nteractive selection, [n]one\n"
            "Choose update mode [a/s/i/n]: "
        )
        choice = prompt(question).strip().lower()

        if choice == "a":
            return list(plan)
        if choice == "s":
            return [e for e in plan if e.kind == UpdateKind.SECURITY]
        if choice != "i":
            logger.info("Skipping updates")
            return []

        selected = []
        for entry in plan:
            answer = prompt(f"Update {entry.package} {entry.current} -> {entry.target}? [y/n/q]: ")
            answer = answer.strip().lower()
            if answer == "q":
                break
            if answer == "y":
                selected.append(entry)
        return selected

    def apply(self, unit: ManifestUnit, entries: list[UpdatePlanEntry]) -> ApplyResult:
        """
        Apply entries to a unit's manifest, then reinstall and verify.

        The new dependency maps are computed completely in memory before
        the manifest is replaced. Only one apply runs per manifest at a
        time. Failures are returned as a failed ApplyResult.
        """
        if not entries:
            self.states[unit.name] = UnitState.APPLIED
            return ApplyResult(unit=unit.name, state=UnitState.APPLIED, dry_run=self.dry_run)

        with self._lock_for(unit.manifest_path):
            self.states[unit.name] = UnitState.APPLYING
            try:
                applied = self._apply_locked(unit, entries)
            except ApplyFailure as e:
                logger.error(f"ApplyFailure: {e}")
                self.states[unit.name] = UnitState.FAILED
                return ApplyResult(
                    unit=unit.name, state=UnitState.FAILED, error=e.reason, dry_run=self.dry_run
                )

        self.states[unit.name] = UnitState.APPLIED
        return ApplyResult(unit=unit.name, state=UnitState.APPLIED, applied=applied, dry_run=self.dry_run)

    def _apply_locked(self, unit: ManifestUnit, entries: list[UpdatePlanEntry]) -> list[UpdatePlanEntry]:
        try:
            content = read_manifest(unit.manifest_path)
        except (OSError, ValueError) as e:
            raise ApplyFailure(unit.name, f"cannot read manifest: {e}")

        sections = {
            key: dict(content.get(key) or {}) for key in ("dependencies", "devDependencies")
        }

        applied = []
        for entry in entries:
            changed = False
            for key, deps in sections.items():
                if entry.package in deps and deps[entry.package] != entry.target:
                    deps[entry.package] = entry.target
                    changed = True
                    suffix = ", dev" if key == "devDependencies" else ""
                    logger.info(f"Updated {entry.package} to {entry.target} ({entry.kind.value}{suffix})")
            if changed:
                applied.append(entry)

        if not applied:
            logger.info(f"No manifest changes needed for {unit.name}")
            return []

        if self.dry_run:
            self._record_dry_run(f"Would update: {unit.manifest_path}")
            for entry in applied:
                self._record_dry_run(f"Would set {entry.package} to {entry.target} in {unit.name}")
            self._record_dry_run(f"Would run npm {' '.join(INSTALL_ARGS)} in {unit.path}")
            return applied

        for key, deps in sections.items():
            if key in content or deps:
                content[key] = deps

        try:
            write_manifest(unit.manifest_path, content)
        except OSError as e:
            raise ApplyFailure(unit.name, f"cannot write manifest: {e}")

        unit.dependencies = sections["dependencies"]
        unit.dev_dependencies = sections["devDependencies"]
        logger.info(f"Updated {unit.manifest_path}")

        self._reinstall(unit)
        return applied

    def _reinstall(self, unit: ManifestUnit) -> None:
        logger.info(f"Running npm install in {unit.name}...")
        try:
            result = self.runner.run("npm", list(INSTALL_ARGS), cwd=unit.path, timeout=INSTALL_TIMEOUT)
        except CommandError as e:
            raise ApplyFailure(unit.name, f"npm install failed: {e}")
        if not result.ok:
            raise ApplyFailure(unit.name, f"npm install failed: {result.stderr.strip()[:200]}")

        if not self.verify:
            return
        try:
            result = self.runner.run("npm", list(VERIFY_ARGS), cwd=unit.path)
        except CommandError as e:
            raise ApplyFailure(unit.name, f"verification failed: {e}")
        if not result.ok:
            raise ApplyFailure(unit.name, f"verification failed: {result.stderr.strip()[:200]}")
        logger.info(f"npm install completed for {unit.name}")

    def _record_dry_run(self, message: str) -> None:
        self.dry_run_log.append(f"[DRY] {message}")
        logger.info(f"[DRY] {message}")

    def remediate_unit(
        self,
        scan: UnitScan,
        mode: UpdateMode,
        prompt: Optional[Prompt] = None,
        severities: Optional[frozenset[Severity]] = None,
    ) -> ApplyResult:
        """
        Plan, select and apply for one unit.

        severities, when given, further restricts the selection (used for
        critical-only emergency fixes).
        """
        self.states[scan.unit.name] = UnitState.SCANNED
        plan = self.build_plan(scan.unit, scan.analyzed, scan.outdated)
        if not plan:
            logger.info(f"No updates needed for {scan.unit.name}")
            self.states[scan.unit.name] = UnitState.APPLIED
            return ApplyResult(unit=scan.unit.name, state=UnitState.APPLIED, dry_run=self.dry_run)

        self.states[scan.unit.name] = _MODE_STATE[mode]
        logger.info(f"Found {len(plan)} potential updates in {scan.unit.name}")
        selected = self.select(plan, mode, prompt)
        if severities is not None:
            selected = [e for e in selected if e.severity in severities]
        return self.apply(scan.unit, selected)

    def remediate(
        self,
        scans: Iterable[UnitScan],
        mode: UpdateMode,
        prompt: Optional[Prompt] = None,
        severities: Optional[frozenset[Severity]] = None,
    ) -> list[ApplyResult]:
        """Remediate every unit independently; a failed unit does not stop the others."""
        results = []
        for scan in scans:
            results.append(self.remediate_unit(scan, mode, prompt, severities))
        failed = [r.unit for r in results if r.state == UnitState.FAILED]
        if failed:
            logger.warning(f"Remediation failed for: {', '.join(failed)}")
        return results
