"""Dependency security remediation for npm projects."""

__version__ = "0.1.0"
