"""Pydantic models for dependency remediation."""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    """Vulnerability severity, ordered critical > high > moderate > low."""

    CRITICAL = "critical"
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: str) -> "Severity":
        """Map a raw scanner severity onto the four known levels."""
        normalized = str(value).strip().lower()
        normalized = SEVERITY_ALIASES.get(normalized, normalized)
        return cls(normalized)


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MODERATE: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

# Scanners disagree on naming; npm uses "moderate", most others "medium"
SEVERITY_ALIASES = {"medium": "moderate", "info": "low"}

# Highest first
SEVERITY_ORDER = sorted(Severity, key=lambda s: s.rank, reverse=True)


class VulnerabilitySource(str, Enum):
    INTERNAL_AUDIT = "internal-audit"
    EXTERNAL_SCANNER = "external-scanner"


class UpdateKind(str, Enum):
    SECURITY = "security"
    OUTDATED = "outdated"


class UnitState(str, Enum):
    """Lifecycle of a manifest unit through remediation."""

    SCANNED = "scanned"
    PLAN_BUILT = "plan_built"
    AUTO = "auto"
    INTERACTIVE = "interactive"
    FORCED = "forced"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


class BranchSource(str, Enum):
    SCANNER_BOT = "scanner-bot"
    DEPENDENCY_BOT = "dependency-bot"
    OTHER_SECURITY = "other-security"


class BranchLocality(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class MergeStatus(str, Enum):
    MERGED = "merged"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommandResult(BaseModel):
    """Outcome of an external command."""

    command: str = Field(description="Executable that was invoked")
    args: list[str] = Field(default_factory=list, description="Arguments passed")
    returncode: int = Field(description="Process exit status")
    stdout: str = Field(default="", description="Captured standard output")
    stderr: str = Field(default="", description="Captured standard error")

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ManifestUnit(BaseModel):
    """One workspace subproject and the dependencies its manifest declares."""

    name: str = Field(description="Display name of the unit (e.g. 'root', 'client')")
    path: Path = Field(description="Directory holding the manifest")
    manifest_path: Path = Field(description="Path to package.json")
    dependencies: dict[str, str] = Field(
        default_factory=dict, description="Runtime dependencies: name -> version constraint"
    )
    dev_dependencies: dict[str, str] = Field(
        default_factory=dict, description="Development dependencies: name -> version constraint"
    )

    def constraint_for(self, package: str) -> Optional[str]:
        """Return the declared constraint for a package, runtime map first."""
        if package in self.dependencies:
            return self.dependencies[package]
        return self.dev_dependencies.get(package)

    def declares(self, package: str) -> bool:
        return package in self.dependencies or package in self.dev_dependencies


class VulnerabilityRecord(BaseModel):
    """A normalized vulnerability finding, independent of the tool that reported it."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Advisory identifier (GHSA, CVE or scanner id)")
    package: str = Field(description="Name of the vulnerable package")
    severity: Severity = Field(description="Severity level")
    discovered: datetime = Field(description="When the advisory was published (UTC)")
    vulnerable_range: str = Field(default="*", description="Affected version range")
    patched_range: Optional[str] = Field(
        default=None, description="Version range that fixes the issue, if any"
    )
    title: str = Field(default="Unknown vulnerability", description="Brief description")
    url: Optional[str] = Field(default=None, description="Advisory URL")
    source: VulnerabilitySource = Field(
        default=VulnerabilitySource.INTERNAL_AUDIT, description="Which scanner produced it"
    )


class AnalyzedVulnerability(BaseModel):
    """A vulnerability record enriched with age, staleness and eligibility."""

    record: VulnerabilityRecord
    age_in_days: int = Field(description="Days since the advisory was published")
    sla_days: int = Field(description="Remediation ceiling for this severity")
    is_stale: bool = Field(description="Whether the age exceeds the SLA ceiling")
    auto_eligible: bool = Field(description="Whether unattended remediation is allowed")

    @property
    def severity(self) -> Severity:
        return self.record.severity

    @property
    def package(self) -> str:
        return self.record.package


class OutdatedEntry(BaseModel):
    """A package with a newer published version."""

    model_config = ConfigDict(frozen=True)

    package: str
    current: Optional[str] = None
    wanted: Optional[str] = None
    latest: Optional[str] = None


class UpdatePlanEntry(BaseModel):
    """A single proposed manifest change."""

    kind: UpdateKind
    package: str
    rationale: str
    current: str = Field(description="Constraint currently declared in the manifest")
    target: str = Field(description="Constraint to write")
    severity: Optional[Severity] = None
    auto_eligible: bool = False
    source_record_id: Optional[str] = None


class UnitScan(BaseModel):
    """Scan and analysis results for one manifest unit."""

    unit: ManifestUnit
    vulnerabilities: list[VulnerabilityRecord] = Field(default_factory=list)
    outdated: list[OutdatedEntry] = Field(default_factory=list)
    analyzed: list[AnalyzedVulnerability] = Field(default_factory=list)
    score: int = 100
    warnings: list[str] = Field(default_factory=list)

    def count(self, severity: Severity) -> int:
        return sum(1 for v in self.vulnerabilities if v.severity == severity)


class ApplyResult(BaseModel):
    """Outcome of applying a plan to one unit."""

    unit: str
    state: UnitState
    applied: list[UpdatePlanEntry] = Field(default_factory=list)
    error: Optional[str] = None
    dry_run: bool = False


class RemediationBranch(BaseModel):
    """A version-control branch produced by a security fix process."""

    model_config = ConfigDict(frozen=True)

    name: str
    source: BranchSource
    locality: BranchLocality


class BranchDetails(BaseModel):
    name: str
    commits: list[str] = Field(default_factory=list, description="Recent commit subjects")
    changed_files: list[str] = Field(default_factory=list)
    diff_stat: str = ""


class MergeResult(BaseModel):
    branch: str
    status: MergeStatus
    message: str = ""
    conflicted_files: list[str] = Field(default_factory=list)
    deleted: bool = False
    notes: list[str] = Field(default_factory=list)


class AlertVulnerability(BaseModel):
    package: str
    severity: Severity
    title: str


class Alert(BaseModel):
    """A security alert passed to the notification dispatcher."""

    severity: Severity
    title: str
    description: str
    vulnerabilities: list[AlertVulnerability] = Field(default_factory=list)
    actions: list[str] = Field(default_factory=list, description="Recommended actions")
    timestamp: datetime = Field(default_factory=utcnow)


class DeliveryResult(BaseModel):
    channel: str
    delivered: bool
    error: Optional[str] = None


class UnitReport(BaseModel):
    vulnerabilities: int = 0
    outdated: int = 0
    score: int = 100
    details: dict = Field(default_factory=dict)


class ReportSummary(BaseModel):
    total_vulnerabilities: int = 0
    critical: int = 0
    high: int = 0
    moderate: int = 0
    low: int = 0
    outdated_packages: int = 0
    overall_score: int = 100


class SecurityReport(BaseModel):
    """The persisted per-invocation report."""

    timestamp: datetime = Field(default_factory=utcnow)
    project: str = ""
    units: dict[str, UnitReport] = Field(default_factory=dict)
    summary: ReportSummary = Field(default_factory=ReportSummary)


class ScanRequest(BaseModel):
    """Request body for the read-only scan endpoint."""

    path: Optional[str] = Field(default=None, description="Local project directory to scan")
    repo_url: Optional[str] = Field(default=None, description="Git repository to clone and scan")
    branch: Optional[str] = Field(default=None, description="Branch to check out when cloning")
    check_outdated: bool = Field(default=False, description="Also query outdated packages")
