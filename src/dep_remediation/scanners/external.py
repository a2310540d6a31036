"""External security scanner (Aikido) report ingestion and integration status."""

import hashlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from ..errors import CommandError, ParseFailure
from ..models import (
    BranchSource,
    RemediationBranch,
    Severity,
    VulnerabilityRecord,
    VulnerabilitySource,
    utcnow,
)
from ..runner import CommandRunner
from .npm import normalizer, parse_timestamp

logger = logging.getLogger(__name__)

CONFIG_FILE = ".aikido.yml"
REPORT_MARKER = "aikido"


class IntegrationStatus(BaseModel):
    """Whether the external scanner is wired into this repository."""

    configured: bool = Field(description="Whether the scanner config file exists")
    config_path: str
    repository: Optional[str] = Field(default=None, description="origin remote URL")
    scanner_branches: list[str] = Field(default_factory=list)
    dependency_branches: list[str] = Field(default_factory=list)
    latest_report: Optional[str] = None


def find_latest_report(reports_dir: Path) -> Optional[Path]:
    """Return the newest external scanner JSON report, by file name."""
    if not reports_dir.is_dir():
        return None
    candidates = sorted(
        p for p in reports_dir.iterdir()
        if p.is_file() and REPORT_MARKER in p.name.lower() and p.suffix == ".json"
    )
    return candidates[-1] if candidates else None


def parse_external_report(data: Any, now: Optional[datetime] = None) -> list[VulnerabilityRecord]:
    """
    Normalize an external scanner report into VulnerabilityRecord objects.

    Expected shape:
    {
        "vulnerabilities": [
            {
                "id": "AIK-2024-001",
                "package": "lodash",
                "severity": "high",
                "title": "Prototype pollution",
                "created": "2024-05-01T00:00:00Z",
                "affected_versions": "<4.17.21",
                "fixed_version": "4.17.21",
                "fix_available": true
            }
        ]
    }

    Only "package" and "severity" are required; entries missing either are
    dropped and logged.
    """
    now = now or utcnow()
    items = data.get("vulnerabilities", []) if isinstance(data, dict) else data
    if not isinstance(items, list):
        logger.warning("ParseFailure: external report has no vulnerability list")
        return []

    records = []
    for index, item in enumerate(items):
        try:
            records.append(_normalize_external(item, now))
        except ParseFailure as e:
            logger.warning(f"ParseFailure: dropping external finding #{index}: {e}")
    return records


@normalizer
def _normalize_external(item: Any, now: datetime) -> VulnerabilityRecord:
    if not isinstance(item, dict):
        raise ParseFailure("finding is not an object")
    package = item.get("package") or item.get("package_name")
    if not package:
        raise ParseFailure("missing package")
    try:
        severity = Severity.parse(item.get("severity", ""))
    except ValueError:
        raise ParseFailure(f"unknown severity {item.get('severity')!r}")

    fixed = item.get("fixed_version") or item.get("patched_versions")
    if fixed is not None and not isinstance(fixed, str):
        raise ParseFailure(f"fixed version {fixed!r} is not a string")
    if fixed and not any(fixed.startswith(op) for op in (">", "<", "=", "^", "~")):
        fixed = f">={fixed}"
    if item.get("fix_available") is False:
        fixed = None

    title = item.get("title") or "Unknown vulnerability"
    record_id = item.get("id")
    if not record_id:
        digest = hashlib.sha1(f"{package}:{title}".encode("utf-8")).hexdigest()[:12]
        record_id = f"external-{digest}"

    created = item.get("created") or item.get("discovered")
    return VulnerabilityRecord(
        id=str(record_id),
        package=package,
        severity=severity,
        discovered=parse_timestamp(created) if created else now,
        vulnerable_range=item.get("affected_versions") or item.get("vulnerable_versions") or "*",
        patched_range=fixed,
        title=title,
        url=item.get("url"),
        source=VulnerabilitySource.EXTERNAL_SCANNER,
    )


def load_external_findings(reports_dir: Path, now: Optional[datetime] = None) -> list[VulnerabilityRecord]:
    """Load and normalize the newest external scanner report, if one exists."""
    report = find_latest_report(reports_dir)
    if report is None:
        return []
    try:
        data = json.loads(report.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"ScanFailure: could not read external report {report}: {e}")
        return []
    try:
        records = parse_external_report(data, now)
    except ValidationError as e:
        logger.warning(f"ScanFailure: could not normalize external report {report}: {e}")
        return []
    logger.info(f"Loaded {len(records)} external findings from {report.name}")
    return records


def integration_status(
    project_root: Path,
    runner: CommandRunner,
    branches: list[RemediationBranch],
    reports_dir: Optional[Path] = None,
) -> IntegrationStatus:
    """
    Report how the external scanner is integrated.

    The scanner runs at the organisation level, so nothing is executed here;
    this only inspects the config file, the origin remote and the branches
    the scanner and dependency bots have pushed.
    """
    config_path = project_root / CONFIG_FILE
    status = IntegrationStatus(configured=config_path.exists(), config_path=str(config_path))
    if not status.configured:
        logger.warning(f"External scanner configuration not found: {config_path}")

    try:
        result = runner.run("git", ["remote", "get-url", "origin"], cwd=project_root)
        if result.ok and result.stdout.strip():
            status.repository = result.stdout.strip()
    except CommandError as e:
        logger.warning(f"Could not read origin remote: {e}")

    status.scanner_branches = [b.name for b in branches if b.source == BranchSource.SCANNER_BOT]
    status.dependency_branches = [b.name for b in branches if b.source == BranchSource.DEPENDENCY_BOT]

    if reports_dir is not None:
        latest = find_latest_report(reports_dir)
        status.latest_report = str(latest) if latest else None

    return status
