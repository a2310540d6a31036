"""Security report building and persistence."""

import logging
from pathlib import Path
from typing import Iterable, Optional

from .models import ReportSummary, SecurityReport, Severity, UnitReport, UnitScan

logger = logging.getLogger(__name__)


def build_report(scans: Iterable[UnitScan], project: str = "") -> SecurityReport:
    """
    Aggregate unit scans into a report.

    The overall score is the rounded mean of the unit scores, or 100 when
    nothing was scanned. Units appear in scan order.
    """
    report = SecurityReport(project=project)
    summary = ReportSummary()
    scores = []

    for scan in scans:
        for record in scan.vulnerabilities:
            summary.total_vulnerabilities += 1
            if record.severity == Severity.CRITICAL:
                summary.critical += 1
            elif record.severity == Severity.HIGH:
                summary.high += 1
            elif record.severity == Severity.MODERATE:
                summary.moderate += 1
            else:
                summary.low += 1
        summary.outdated_packages += len(scan.outdated)

        analysis = {(a.record.package, a.record.id): a for a in scan.analyzed}
        details = []
        for record in scan.vulnerabilities:
            entry = record.model_dump(mode="json")
            vuln = analysis.get((record.package, record.id))
            if vuln is not None:
                entry.update(
                    age_in_days=vuln.age_in_days,
                    is_stale=vuln.is_stale,
                    auto_eligible=vuln.auto_eligible,
                )
            details.append(entry)

        report.units[scan.unit.name] = UnitReport(
            vulnerabilities=len(scan.vulnerabilities),
            outdated=len(scan.outdated),
            score=scan.score,
            details={
                "path": str(scan.unit.path),
                "vulnerabilities": details,
                "outdated": [entry.model_dump(mode="json") for entry in scan.outdated],
                "warnings": list(scan.warnings),
            },
        )
        scores.append(scan.score)

    # round-half-up, so 72.5 reports as 73
    summary.overall_score = int(sum(scores) / len(scores) + 0.5) if scores else 100
    report.summary = summary
    return report


def report_path(reports_dir: Path, report: SecurityReport) -> Path:
    return Path(reports_dir) / f"security-report-{report.timestamp.date().isoformat()}.json"


def write_report(report: SecurityReport, reports_dir: Path, dry_run: bool = False) -> Optional[Path]:
    """Write the report as JSON; in dry-run mode only log where it would go."""
    path = report_path(reports_dir, report)
    if dry_run:
        logger.info(f"[DRY] Would save report: {path}")
        return None
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(report.model_dump_json(indent=2) + "\n", encoding="utf-8")
    logger.info(f"Security report saved: {path}")
    return path
