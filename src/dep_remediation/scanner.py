"""Manifest discovery and unified scan orchestration."""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from .analyzer import VulnerabilityAnalyzer
from .errors import CommandError, ScanFailure
from .git_utils import cloned_repo
from .models import ManifestUnit, OutdatedEntry, SecurityReport, UnitScan, VulnerabilityRecord, utcnow
from .report import build_report
from .runner import CommandRunner, SubprocessRunner
from .scanners.external import load_external_findings
from .scanners.npm import (
    MANIFEST_NAME,
    OUTDATED_ARGS,
    audit_args,
    detect_npm,
    parse_npm_audit_output,
    parse_npm_outdated_output,
    read_manifest,
)

logger = logging.getLogger(__name__)

# Conventional monorepo subprojects scanned even without npm workspaces
CONVENTIONAL_UNITS = ("client", "server")


def workspace_paths(root: Path) -> list[Path]:
    """
    List the directories of a monorepo that may hold manifests.

    The root comes first, then directories matched by the root manifest's
    npm "workspaces" globs, then conventional client/server directories.
    """
    root = Path(root).resolve()
    paths = [root]

    patterns: list[str] = []
    if detect_npm(root):
        try:
            workspaces = read_manifest(root / MANIFEST_NAME).get("workspaces", [])
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read workspaces from {root / MANIFEST_NAME}: {e}")
            workspaces = []
        if isinstance(workspaces, dict):
            workspaces = workspaces.get("packages", [])
        patterns = [w for w in workspaces if isinstance(w, str)]

    for pattern in patterns:
        for match in sorted(root.glob(pattern)):
            if match.is_dir():
                paths.append(match.resolve())

    for name in CONVENTIONAL_UNITS:
        candidate = root / name
        if candidate.is_dir():
            paths.append(candidate.resolve())

    unique: list[Path] = []
    for path in paths:
        if path not in unique:
            unique.append(path)
    return unique


def _unit_name(path: Path, base: Optional[Path]) -> str:
    if base is not None:
        try:
            relative = path.relative_to(base)
        except ValueError:
            return path.name
        return "root" if str(relative) == "." else relative.as_posix()
    return path.name


def discover_manifests(root_paths: Iterable[Path], base: Optional[Path] = None) -> list[ManifestUnit]:
    """
    Read the manifest of every path that has one.

    Paths without a package.json, or with one that cannot be read, are
    skipped with a warning. Units keep the order of root_paths.
    """
    base = Path(base).resolve() if base is not None else None
    units: list[ManifestUnit] = []
    for raw_path in root_paths:
        path = Path(raw_path).resolve()
        if path.is_file() and path.name == MANIFEST_NAME:
            path = path.parent
        manifest_path = path / MANIFEST_NAME
        if not detect_npm(path):
            logger.warning(f"No {MANIFEST_NAME} found in {path}, skipping")
            continue
        try:
            content = read_manifest(manifest_path)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read {manifest_path}: {e}")
            continue

        units.append(
            ManifestUnit(
                name=_unit_name(path, base),
                path=path,
                manifest_path=manifest_path,
                dependencies=dict(content.get("dependencies") or {}),
                dev_dependencies=dict(content.get("devDependencies") or {}),
            )
        )
    return units


def scan_vulnerabilities(
    unit: ManifestUnit, runner: CommandRunner, now: Optional[datetime] = None
) -> list[VulnerabilityRecord]:
    """
    Run npm audit for a unit.

    npm audit exits non-zero when vulnerabilities exist, so the exit code
    is ignored and stdout is always parsed.

    Raises:
        ScanFailure: if npm cannot be launched or its output cannot be read
    """
    logger.info(f"Scanning vulnerabilities in {unit.name}...")
    try:
        result = runner.run("npm", audit_args(unit.path), cwd=unit.path)
    except CommandError as e:
        raise ScanFailure(f"npm audit failed in {unit.name}: {e}")

    if not result.stdout.strip() and result.stderr:
        raise ScanFailure(f"npm audit error in {unit.name}: {result.stderr.strip()[:200]}")
    return parse_npm_audit_output(result.stdout, now)


def check_outdated_packages(unit: ManifestUnit, runner: CommandRunner) -> list[OutdatedEntry]:
    """
    Run npm outdated for a unit.

    npm outdated exits 1 when anything is outdated; that is not an error.

    Raises:
        ScanFailure: if npm cannot be launched or its output cannot be read
    """
    logger.info(f"Checking outdated packages in {unit.name}...")
    try:
        result = runner.run("npm", list(OUTDATED_ARGS), cwd=unit.path)
    except CommandError as e:
        raise ScanFailure(f"npm outdated failed in {unit.name}: {e}")
    return parse_npm_outdated_output(result.stdout)


def scan_unit(
    unit: ManifestUnit,
    runner: CommandRunner,
    check_outdated: bool = False,
    external_findings: Optional[list[VulnerabilityRecord]] = None,
    now: Optional[datetime] = None,
) -> UnitScan:
    """
    Scan one unit, falling back to empty results on any ScanFailure.

    External findings are attributed to the unit when it declares the
    affected package.
    """
    scan = UnitScan(unit=unit)

    try:
        scan.vulnerabilities = scan_vulnerabilities(unit, runner, now)
    except (ScanFailure, ValidationError) as e:
        logger.warning(f"ScanFailure: {e}")
        scan.warnings.append(str(e))

    if check_outdated:
        try:
            scan.outdated = check_outdated_packages(unit, runner)
        except (ScanFailure, ValidationError) as e:
            logger.warning(f"ScanFailure: {e}")
            scan.warnings.append(str(e))

    if external_findings:
        seen = {(v.package, v.id) for v in scan.vulnerabilities}
        for record in external_findings:
            if unit.declares(record.package) and (record.package, record.id) not in seen:
                scan.vulnerabilities.append(record)
                seen.add((record.package, record.id))

    return scan


def scan_units(
    units: list[ManifestUnit],
    runner: CommandRunner,
    analyzer: Optional[VulnerabilityAnalyzer] = None,
    check_outdated: bool = False,
    external_findings: Optional[list[VulnerabilityRecord]] = None,
    max_workers: int = 4,
) -> list[UnitScan]:
    """
    Scan and analyze units concurrently.

    Scans are read-only and independent, so they run on a thread pool;
    results are returned in the order of units regardless of completion
    order.
    """
    analyzer = analyzer or VulnerabilityAnalyzer()
    now = utcnow()
    if not units:
        return []

    def _scan(unit: ManifestUnit) -> UnitScan:
        return scan_unit(unit, runner, check_outdated, external_findings, now)

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(units)))) as executor:
        scans = list(executor.map(_scan, units))

    for scan in scans:
        analyzer.analyze_unit(scan, now)
        logger.info(
            f"{scan.unit.name}: score {scan.score}/100, "
            f"{len(scan.vulnerabilities)} vulnerabilities, {len(scan.outdated)} outdated"
        )
    return scans



def scan_project(
    root: Path,
    runner: CommandRunner,
    analyzer: Optional[VulnerabilityAnalyzer] = None,
    check_outdated: bool = False,
    reports_dir: Optional[Path] = None,
    paths: Optional[list[Path]] = None,
) -> list[UnitScan]:
    """Discover every unit under root, fold in external findings and scan."""
    root = Path(root).resolve()
    units = discover_manifests(paths or workspace_paths(root), base=root)
    external = load_external_findings(reports_dir or root / "reports")
    return scan_units(units, runner, analyzer, check_outdated=check_outdated, external_findings=external)


def scan_repository(
    repo_url: Optional[str] = None,
    local_path: Optional[str | Path] = None,
    branch: Optional[str] = None,
    check_outdated: bool = False,
    runner: Optional[CommandRunner] = None,
) -> SecurityReport:
    """
    Scan a local directory or a shallow clone of a repository.

    Read-only: builds the report but never writes it and never applies
    updates.

    Raises:
        ValueError: if neither source is given or the local path is not a directory
        GitCommandError: if cloning fails
    """
    if not repo_url and not local_path:
        raise ValueError("Either repo_url or local_path must be provided")
    runner = runner or SubprocessRunner()

    if local_path:
        repo_path = Path(local_path).resolve()
        if not repo_path.is_dir():
            raise ValueError(f"Path is not a directory: {local_path}")
        scans = scan_project(repo_path, runner, check_outdated=check_outdated)
        return build_report(scans, project=repo_path.name)

    with cloned_repo(repo_url, branch) as repo_path:
        scans = scan_project(repo_path, runner, check_outdated=check_outdated)
    return build_report(scans, project=repo_url.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git"))
