"""Immutable policy values injected into the analyzer, orchestrator and branch manager."""

from pydantic import BaseModel, ConfigDict, Field

from .models import Severity


def _default_sla() -> dict[Severity, int]:
    return {
        Severity.CRITICAL: 7,
        Severity.HIGH: 30,
        Severity.MODERATE: 90,
        Severity.LOW: 365,
    }


def _default_weights() -> dict[Severity, int]:
    return {
        Severity.CRITICAL: 25,
        Severity.HIGH: 15,
        Severity.MODERATE: 8,
        Severity.LOW: 3,
    }


class SecurityPolicy(BaseModel):
    """Severity tables, scoring weights and auto-update allow-list."""

    model_config = ConfigDict(frozen=True)

    sla_days: dict[Severity, int] = Field(
        default_factory=_default_sla, description="Remediation ceiling in days per severity"
    )
    severity_weights: dict[Severity, int] = Field(
        default_factory=_default_weights, description="Score deduction per vulnerability"
    )
    stale_penalty: int = Field(default=10, description="Extra deduction per stale vulnerability")
    outdated_penalty: int = Field(default=2, description="Deduction per outdated package")
    outdated_penalty_cap: int = Field(default=30, description="Maximum outdated deduction")
    auto_update_severities: frozenset[Severity] = Field(
        default=frozenset({Severity.CRITICAL, Severity.HIGH}),
        description="Severities eligible for unattended remediation",
    )
    excluded_packages: frozenset[str] = Field(
        default=frozenset(), description="Packages never updated automatically"
    )
    allow_major_upgrades: bool = Field(
        default=False, description="Allow outdated updates that cross a major version"
    )
    alert_threshold: Severity = Field(
        default=Severity.HIGH, description="Lowest severity that raises an alert"
    )

    def sla_for(self, severity: Severity) -> int:
        return self.sla_days.get(severity, self.sla_days[Severity.LOW])

    def weight_for(self, severity: Severity) -> int:
        return self.severity_weights.get(severity, 0)


class BranchPolicy(BaseModel):
    """Branch name markers and merge targets for remediation branches."""

    model_config = ConfigDict(frozen=True)

    scanner_markers: tuple[str, ...] = ("scanner-bot", "aikido")
    dependency_markers: tuple[str, ...] = ("dependabot", "dependency-bot")
    security_markers: tuple[str, ...] = ("security", "vulnerability")
    safe_markers: tuple[str, ...] = ("patch",)
    default_branch: str = "main"
    integration_branches: tuple[str, ...] = ("main", "develop")
    remote: str = "origin"

    @property
    def all_markers(self) -> tuple[str, ...]:
        return self.scanner_markers + self.dependency_markers + self.security_markers


DEFAULT_POLICY = SecurityPolicy()
DEFAULT_BRANCH_POLICY = BranchPolicy()
