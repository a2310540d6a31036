"""Terminal formatting for scans, branches and reports."""

from .analyzer import score_band
from .models import (
    AnalyzedVulnerability,
    ApplyResult,
    BranchDetails,
    BranchSource,
    MergeResult,
    RemediationBranch,
    SecurityReport,
    Severity,
    UnitScan,
    UnitState,
)

RESET = "\033[0m"
BOLD = "\033[1m"

SEVERITY_COLORS = {
    Severity.CRITICAL: "\033[91m",  # Red
    Severity.HIGH: "\033[93m",      # Yellow
    Severity.MODERATE: "\033[94m",  # Blue
    Severity.LOW: "\033[90m",       # Gray
}

BAND_COLORS = {
    "excellent": "\033[92m",
    "fair": "\033[93m",
    "poor": "\033[33m",
    "critical": "\033[91m",
}

SOURCE_LABELS = {
    BranchSource.SCANNER_BOT: "Scanner Bot",
    BranchSource.DEPENDENCY_BOT: "Dependency Bot",
    BranchSource.OTHER_SECURITY: "Other Security",
}


def format_score(score: int) -> str:
    color = BAND_COLORS[score_band(score)]
    return f"{color}{score}/100{RESET}"


def format_vulnerabilities_table(vulns: list[AnalyzedVulnerability], title: str = "Vulnerabilities") -> str:
    """Format analyzed vulnerabilities, highest severity first."""
    if not vulns:
        return f"\n{title}: None\n"

    lines = [f"\n{title} ({len(vulns)}):", "-" * 80]
    for index, vuln in enumerate(sorted(vulns, key=lambda v: -v.severity.rank), start=1):
        record = vuln.record
        color = SEVERITY_COLORS.get(record.severity, "")
        status = " [STALE]" if vuln.is_stale else ""
        if vuln.auto_eligible:
            status += " [AUTO]"
        lines.append(f"{index:3}. {color}[{record.severity.value.upper():8}]{RESET} {record.package}{status}")
        lines.append(f"           {record.title}")
        lines.append(f"           Affected: {record.vulnerable_range}  Patched: {record.patched_range or 'none'}")
        lines.append(f"           Age: {vuln.age_in_days}d (SLA {vuln.sla_days}d)  Source: {record.source.value}")
        lines.append("")
    return "\n".join(lines)


def format_unit_summary(scan: UnitScan) -> str:
    lines = [
        f"{BOLD}{scan.unit.name}{RESET} ({scan.unit.path})",
        f"   Score: {format_score(scan.score)}",
        f"   Vulnerabilities: {len(scan.vulnerabilities)}",
        f"   Outdated: {len(scan.outdated)}",
    ]
    for warning in scan.warnings:
        lines.append(f"   Warning: {warning}")
    return "\n".join(lines)


def format_severity_counts(counts: dict[Severity, int]) -> str:
    return "\n".join(
        f"   {SEVERITY_COLORS[severity]}{severity.value.capitalize():9}{RESET} {counts.get(severity, 0)}"
        for severity in (Severity.CRITICAL, Severity.HIGH, Severity.MODERATE, Severity.LOW)
    )


def format_report_summary(report: SecurityReport) -> str:
    summary = report.summary
    lines = [
        "\nSecurity Summary:",
        f"   Overall Score: {format_score(summary.overall_score)}",
        format_severity_counts(
            {
                Severity.CRITICAL: summary.critical,
                Severity.HIGH: summary.high,
                Severity.MODERATE: summary.moderate,
                Severity.LOW: summary.low,
            }
        ),
        f"   Outdated:  {summary.outdated_packages}",
    ]
    if summary.critical:
        lines.append("\nCRITICAL: Immediate action required for critical vulnerabilities!")
    elif summary.high:
        lines.append("\nWARNING: High severity vulnerabilities found")
    elif summary.total_vulnerabilities == 0:
        lines.append("\nNo known vulnerabilities found")
    return "\n".join(lines)


def format_branches(branches: list[RemediationBranch]) -> str:
    if not branches:
        return "No security branches found"
    lines = [f"Found {len(branches)} security branch(es):"]
    for source in BranchSource:
        group = [b for b in branches if b.source == source]
        if not group:
            continue
        lines.append(f"\n{SOURCE_LABELS[source]} Branches ({len(group)}):")
        for branch in group:
            lines.append(f"   - [{branch.locality.value}] {branch.name}")
    return "\n".join(lines)


def format_branch_details(details: BranchDetails) -> str:
    lines = [f"\nDetails for branch: {details.name}"]
    if details.commits:
        lines.append("\nRecent commits:")
        lines += [f"   - {commit}" for commit in details.commits]
    if details.changed_files:
        lines.append("\nChanged files:")
        lines += [f"   - {path}" for path in details.changed_files]
    if details.diff_stat:
        lines += ["\nChanges summary:", details.diff_stat]
    return "\n".join(lines)


def format_merge_result(result: MergeResult) -> str:
    line = f"[{result.status.value.upper()}] {result.branch}: {result.message}"
    for note in result.notes:
        line += f"\n   note: {note}"
    return line


def format_apply_result(result: ApplyResult) -> str:
    prefix = "[DRY] " if result.dry_run else ""
    if result.state == UnitState.FAILED:
        return f"{prefix}{result.unit}: FAILED - {result.error}"
    if not result.applied:
        return f"{prefix}{result.unit}: no changes"
    changes = ", ".join(f"{e.package} -> {e.target}" for e in result.applied)
    return f"{prefix}{result.unit}: updated {changes}"
