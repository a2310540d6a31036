"""npm audit / npm outdated normalization for Node.js manifests."""

import functools
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from ..errors import ParseFailure, ScanFailure
from ..models import (
    OutdatedEntry,
    Severity,
    VulnerabilityRecord,
    VulnerabilitySource,
    utcnow,
)

logger = logging.getLogger(__name__)

MANIFEST_NAME = "package.json"

AUDIT_ARGS = ["audit", "--json"]
OUTDATED_ARGS = ["outdated", "--json"]
INSTALL_ARGS = ["install", "--no-audit", "--no-fund"]

GHSA_PATTERN = re.compile(r"GHSA-[a-z0-9]{4}-[a-z0-9]{4}-[a-z0-9]{4}")
UPPER_BOUND_PATTERN = re.compile(r"<\s*(\d+(?:\.\d+){0,2}(?:-[0-9A-Za-z.-]+)?)\s*$")


def detect_npm(unit_path: Path) -> bool:
    """Check if the directory holds an npm manifest (has package.json)."""
    return (unit_path / MANIFEST_NAME).exists()


def audit_args(unit_path: Path) -> list[str]:
    """
    Arguments for npm audit in a unit directory.

    Without node_modules the lock file is audited directly, which avoids an
    install just to scan.
    """
    args = list(AUDIT_ARGS)
    if not (unit_path / "node_modules").exists() and (unit_path / "package-lock.json").exists():
        args.append("--package-lock-only")
    return args


def _load_json(output: str, tool: str) -> Any:
    if not output or not output.strip():
        raise ScanFailure(f"{tool} produced no output")
    try:
        return json.loads(output)
    except json.JSONDecodeError as e:
        raise ScanFailure(f"Failed to parse {tool} output: {e}")


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ParseFailure(f"invalid timestamp {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalizer(func):
    """Report wrong-typed fields of a raw scanner record as ParseFailure."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (ValidationError, TypeError, AttributeError) as e:
            raise ParseFailure(f"malformed record: {e}")

    return wrapper


def _parse_severity(value: Any) -> Severity:
    try:
        return Severity.parse(value)
    except ValueError:
        raise ParseFailure(f"unknown severity {value!r}")


def patched_from_vulnerable_range(vulnerable_range: str) -> Optional[str]:
    """
    Derive the first fixed range from a vulnerable range.

    ">=1.0.0 <1.2.3" and "<1.2.3" both mean 1.2.3 is the first safe release.
    Ranges with "<=" or "||" have no single upper bound and yield None.
    """
    if not vulnerable_range or "||" in vulnerable_range or "<=" in vulnerable_range:
        return None
    match = UPPER_BOUND_PATTERN.search(vulnerable_range.strip())
    if not match:
        return None
    return f">={match.group(1)}"


def parse_npm_audit_output(output: str, now: Optional[datetime] = None) -> list[VulnerabilityRecord]:
    """
    Parse npm audit JSON output into VulnerabilityRecord objects.

    Both report shapes are accepted.

    npm 7+ (auditReportVersion 2):
    {
        "vulnerabilities": {
            "lodash": {
                "name": "lodash",
                "severity": "high",
                "via": [{"source": 1523, "title": "...", "url": "...", "range": "<4.17.21"}],
                "range": "<4.17.21",
                "fixAvailable": {"name": "lodash", "version": "4.17.21"} | true | false
            }
        }
    }

    npm 6 (auditReportVersion 1):
    {
        "advisories": {
            "1523": {
                "module_name": "lodash", "severity": "high", "created": "2021-02-15T...",
                "vulnerable_versions": "<4.17.21", "patched_versions": ">=4.17.21", ...
            }
        }
    }

    Records that cannot be normalized are dropped and logged.

    Raises:
        ScanFailure: if the output is empty or not JSON
    """
    data = _load_json(output, "npm audit")
    if not isinstance(data, dict):
        raise ScanFailure("npm audit output is not a JSON object")
    now = now or utcnow()

    if "error" in data and not data.get("vulnerabilities") and not data.get("advisories"):
        error = data["error"]
        summary = error.get("summary") if isinstance(error, dict) else error
        raise ScanFailure(f"npm audit error: {summary}")

    records: list[VulnerabilityRecord] = []
    seen: set[tuple[str, str]] = set()

    if isinstance(data.get("advisories"), dict):
        raw_items = [("advisory", key, item) for key, item in data["advisories"].items()]
    else:
        raw_items = [
            ("vulnerability", key, item) for key, item in (data.get("vulnerabilities") or {}).items()
        ]

    for shape, key, item in raw_items:
        try:
            if shape == "advisory":
                normalized = [_normalize_advisory(key, item)]
            else:
                normalized = _normalize_vulnerability(key, item, now)
        except ParseFailure as e:
            logger.warning(f"ParseFailure: dropping npm audit entry {key!r}: {e}")
            continue

        for record in normalized:
            if (record.package, record.id) in seen:
                continue
            seen.add((record.package, record.id))
            records.append(record)

    return records


@normalizer
def _normalize_advisory(key: str, advisory: Any) -> VulnerabilityRecord:
    if not isinstance(advisory, dict):
        raise ParseFailure("advisory is not an object")
    package = advisory.get("module_name")
    if not package:
        raise ParseFailure("missing module_name")

    patched = advisory.get("patched_versions")
    if not patched or patched in ("<0.0.0", "none"):
        patched = None

    return VulnerabilityRecord(
        id=str(advisory.get("github_advisory_id") or advisory.get("id") or key),
        package=package,
        severity=_parse_severity(advisory.get("severity")),
        discovered=parse_timestamp(advisory["created"]) if advisory.get("created") else utcnow(),
        vulnerable_range=advisory.get("vulnerable_versions") or "*",
        patched_range=patched,
        title=advisory.get("title") or "Unknown vulnerability",
        url=advisory.get("url"),
        source=VulnerabilitySource.INTERNAL_AUDIT,
    )


@normalizer
def _normalize_vulnerability(key: str, vuln_info: Any, now: datetime) -> list[VulnerabilityRecord]:
    if not isinstance(vuln_info, dict):
        raise ParseFailure("vulnerability entry is not an object")
    package = vuln_info.get("name") or key

    # 'via' holds strings (vulnerable through another package) or advisory
    # objects; only the objects describe this package's own advisories
    advisories = [v for v in vuln_info.get("via", []) if isinstance(v, dict)]
    if not advisories:
        return []

    fix_available = vuln_info.get("fixAvailable")
    fixed_version = None
    if isinstance(fix_available, dict) and fix_available.get("name") == package:
        fixed_version = fix_available.get("version")

    records = []
    for advisory in advisories:
        vulnerable_range = advisory.get("range") or vuln_info.get("range") or "*"
        patched = (
            f">={fixed_version}" if fixed_version else patched_from_vulnerable_range(vulnerable_range)
        )
        if fix_available is False:
            patched = None

        url = advisory.get("url")
        ghsa = GHSA_PATTERN.search(url or "")
        advisory_id = ghsa.group(0) if ghsa else str(advisory.get("source") or f"{package}:{vulnerable_range}")

        discovered = advisory.get("created") or advisory.get("published")
        records.append(
            VulnerabilityRecord(
                id=advisory_id,
                package=package,
                severity=_parse_severity(advisory.get("severity", vuln_info.get("severity"))),
                discovered=parse_timestamp(discovered) if discovered else now,
                vulnerable_range=vulnerable_range,
                patched_range=patched,
                title=advisory.get("title") or "Unknown vulnerability",
                url=url,
                source=VulnerabilitySource.INTERNAL_AUDIT,
            )
        )
    return records


def parse_npm_outdated_output(output: str) -> list[OutdatedEntry]:
    """
    Parse npm outdated JSON output.

    {"axios": {"current": "1.2.0", "wanted": "1.2.6", "latest": "1.7.2", ...}}

    In workspaces npm may report a list of entries per package; the first
    one is used. An empty stdout means nothing is outdated.
    """
    if not output or not output.strip():
        return []
    data = _load_json(output, "npm outdated")
    if not isinstance(data, dict):
        raise ScanFailure("npm outdated output is not a JSON object")

    entries: list[OutdatedEntry] = []
    for package, info in data.items():
        if isinstance(info, list):
            info = info[0] if info else None
        if not isinstance(info, dict):
            logger.warning(f"ParseFailure: dropping npm outdated entry {package!r}")
            continue
        try:
            entry = OutdatedEntry(
                package=package,
                current=info.get("current"),
                wanted=info.get("wanted"),
                latest=info.get("latest"),
            )
        except ValidationError as e:
            logger.warning(f"ParseFailure: dropping npm outdated entry {package!r}: {e}")
            continue
        entries.append(entry)
    return entries


def read_manifest(manifest_path: Path) -> dict:
    """Load a package.json file."""
    with open(manifest_path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{manifest_path} is not a JSON object")
    return data
