"""Scanner modules for npm audit and external scanner reports."""

from .external import integration_status, load_external_findings, parse_external_report
from .npm import detect_npm, parse_npm_audit_output, parse_npm_outdated_output

__all__ = [
    "detect_npm",
    "parse_npm_audit_output",
    "parse_npm_outdated_output",
    "parse_external_report",
    "load_external_findings",
    "integration_status",
]
