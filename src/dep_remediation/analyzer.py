"""Vulnerability age, staleness, eligibility and security scoring."""

import logging
from datetime import datetime
from typing import Iterable, Optional

from .models import (
    Alert,
    AlertVulnerability,
    AnalyzedVulnerability,
    UnitScan,
    VulnerabilityRecord,
    utcnow,
)
from .policy import DEFAULT_POLICY, SecurityPolicy

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 60 * 60 * 24


class VulnerabilityAnalyzer:
    """Applies a SecurityPolicy to normalized vulnerability records."""

    def __init__(self, policy: SecurityPolicy = DEFAULT_POLICY):
        self.policy = policy

    def analyze(self, record: VulnerabilityRecord, now: Optional[datetime] = None) -> AnalyzedVulnerability:
        """
        Enrich a record with its age and policy flags.

        A vulnerability is stale only when its age strictly exceeds the SLA
        ceiling for its severity; an advisory dated in the future has age 0.
        """
        now = now or utcnow()
        age_seconds = (now - record.discovered).total_seconds()
        age_in_days = max(0, int(age_seconds // SECONDS_PER_DAY))
        sla_days = self.policy.sla_for(record.severity)

        return AnalyzedVulnerability(
            record=record,
            age_in_days=age_in_days,
            sla_days=sla_days,
            is_stale=age_in_days > sla_days,
            auto_eligible=record.severity in self.policy.auto_update_severities,
        )

    def compute_score(self, analyzed: Iterable[AnalyzedVulnerability], outdated_count: int = 0) -> int:
        """Score a unit from 0 to 100; higher is healthier."""
        score = 100
        for vuln in analyzed:
            score -= self.policy.weight_for(vuln.severity)
            if vuln.is_stale:
                score -= self.policy.stale_penalty
        score -= min(self.policy.outdated_penalty_cap, self.policy.outdated_penalty * max(0, outdated_count))
        return max(0, min(100, score))

    def analyze_unit(self, scan: UnitScan, now: Optional[datetime] = None) -> UnitScan:
        """Fill in the analyzed records and score of a unit scan."""
        now = now or utcnow()
        scan.analyzed = [self.analyze(record, now) for record in scan.vulnerabilities]
        scan.score = self.compute_score(scan.analyzed, len(scan.outdated))
        stale = sum(1 for a in scan.analyzed if a.is_stale)
        if stale:
            logger.warning(f"{scan.unit.name}: {stale} vulnerabilities are past their remediation SLA")
        return scan

    def escalation_alert(self, scans: Iterable[UnitScan]) -> Optional[Alert]:
        """
        Build an alert when any vulnerability reaches the alert threshold.

        The alert carries the highest severity found. Returns None when
        nothing qualifies.
        """
        threshold = self.policy.alert_threshold.rank
        flagged: list[tuple[str, AnalyzedVulnerability]] = []
        for scan in scans:
            for vuln in scan.analyzed:
                if vuln.severity.rank >= threshold:
                    flagged.append((scan.unit.name, vuln))

        if not flagged:
            return None

        top = max(flagged, key=lambda item: item[1].severity.rank)[1].severity
        stale = sum(1 for _, v in flagged if v.is_stale)
        units = sorted({name for name, _ in flagged})
        description = (
            f"{len(flagged)} {self.policy.alert_threshold.value}-or-higher vulnerabilities found in {', '.join(units)}"
        )
        if stale:
            description += f"; {stale} past their remediation SLA"

        actions = ["Run dep-remediation --auto-update to apply eligible security fixes"]
        if any(v.record.patched_range is None for _, v in flagged):
            actions.append("Review packages without an available fix and consider replacing them")
        actions.append("Review pending remediation branches")

        return Alert(
            severity=top,
            title=f"{top.value.capitalize()} dependency vulnerabilities detected",
            description=description,
            vulnerabilities=[
                AlertVulnerability(package=v.package, severity=v.severity, title=v.record.title)
                for _, v in sorted(flagged, key=lambda item: -item[1].severity.rank)
            ],
            actions=actions,
        )


def score_band(score: int) -> str:
    """Label a score for display."""
    if score >= 90:
        return "excellent"
    if score >= 70:
        return "fair"
    if score >= 50:
        return "poor"
    return "critical"
