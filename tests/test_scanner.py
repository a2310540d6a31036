"""Tests for manifest discovery and scan tolerance."""

import json
import time

from dep_remediation.analyzer import VulnerabilityAnalyzer
from dep_remediation.errors import CommandError
from dep_remediation.models import CommandResult, Severity, VulnerabilitySource
from dep_remediation.scanner import discover_manifests, scan_project, scan_unit, scan_units, workspace_paths

from conftest import NOW, make_record, write_package_json

AUDIT_WITH_LODASH = json.dumps(
    {
        "vulnerabilities": {
            "lodash": {
                "name": "lodash",
                "severity": "critical",
                "via": [{"source": 1, "title": "Prototype Pollution", "range": "<2.0.0"}],
                "fixAvailable": {"name": "lodash", "version": "2.0.0"},
            }
        }
    }
)


class TestDiscovery:
    def test_workspace_paths(self, tmp_path):
        write_package_json(tmp_path, {}, workspaces=["packages/*"])
        write_package_json(tmp_path / "packages" / "b", {})
        write_package_json(tmp_path / "packages" / "a", {})
        (tmp_path / "client").mkdir()
        (tmp_path / "docs").mkdir()

        paths = workspace_paths(tmp_path)

        root = tmp_path.resolve()
        assert paths == [root, root / "packages" / "a", root / "packages" / "b", root / "client"]

    def test_discover_skips_missing_and_invalid_manifests(self, tmp_path):
        write_package_json(tmp_path, {"express": "^4.18.0"}, {"jest": "^29.0.0"})
        write_package_json(tmp_path / "server", {"pg": "^8.0.0"})
        (tmp_path / "client").mkdir()
        (tmp_path / "broken").mkdir()
        (tmp_path / "broken" / "package.json").write_text("{not json")

        units = discover_manifests(
            [tmp_path, tmp_path / "client", tmp_path / "broken", tmp_path / "server"], base=tmp_path
        )

        assert [u.name for u in units] == ["root", "server"]
        assert units[0].dependencies == {"express": "^4.18.0"}
        assert units[0].dev_dependencies == {"jest": "^29.0.0"}
        assert units[1].constraint_for("pg") == "^8.0.0"


class TestScanUnit:
    def test_nonzero_exit_is_still_parsed(self, make_unit, fake_runner):
        unit = make_unit(dependencies={"lodash": "^1.0.0"})
        fake_runner.add("npm", ["audit"], returncode=1, stdout=AUDIT_WITH_LODASH)

        scan = scan_unit(unit, fake_runner, now=NOW)

        assert [v.package for v in scan.vulnerabilities] == ["lodash"]
        assert scan.vulnerabilities[0].patched_range == ">=2.0.0"
        assert scan.warnings == []

    def test_launch_failure_yields_empty_result(self, make_unit, fake_runner):
        unit = make_unit()
        fake_runner.add("npm", ["audit"], error=CommandError("npm", "executable not found"))
        fake_runner.add("npm", ["outdated"], error=CommandError("npm", "timed out after 120s"))

        scan = scan_unit(unit, fake_runner, check_outdated=True, now=NOW)

        assert scan.vulnerabilities == []
        assert scan.outdated == []
        assert len(scan.warnings) == 2

    def test_malformed_output_yields_empty_result(self, make_unit, fake_runner):
        unit = make_unit()
        fake_runner.add("npm", ["audit"], returncode=1, stdout="npm ERR! something")

        scan = scan_unit(unit, fake_runner, now=NOW)

        assert scan.vulnerabilities == []
        assert "npm audit" in scan.warnings[0]

    def test_outdated_is_only_queried_on_request(self, make_unit, fake_runner):
        scan_unit(make_unit(), fake_runner, now=NOW)
        assert fake_runner.invoked("npm", "outdated") == []

    def test_external_findings_attributed_to_declaring_unit(self, make_unit, fake_runner):
        unit = make_unit(dependencies={"express": "^4.18.0"})
        external = [
            make_record("express", Severity.CRITICAL, source=VulnerabilitySource.EXTERNAL_SCANNER),
            make_record("koa", Severity.HIGH, source=VulnerabilitySource.EXTERNAL_SCANNER),
        ]
        fake_runner.add("npm", ["audit"], stdout=json.dumps({"vulnerabilities": {}}))

        scan = scan_unit(unit, fake_runner, external_findings=external, now=NOW)

        assert [v.package for v in scan.vulnerabilities] == ["express"]


class SlowFirstRunner:
    """Finishes the first unit's audit last."""

    def run(self, command, args, cwd=None, timeout=None):
        if cwd is not None and cwd.name == "a":
            time.sleep(0.2)
        return CommandResult(command=command, args=list(args), returncode=0, stdout='{"vulnerabilities": {}}')


def test_scan_units_keeps_unit_order(make_unit):
    units = [make_unit(name) for name in ("a", "b", "c", "d")]

    scans = scan_units(units, SlowFirstRunner(), VulnerabilityAnalyzer(), max_workers=4)

    assert [s.unit.name for s in scans] == ["a", "b", "c", "d"]
    assert all(s.score == 100 for s in scans)


def test_scan_units_scores_each_unit(make_unit, fake_runner):
    fake_runner.add("npm", ["audit"], returncode=1, stdout=AUDIT_WITH_LODASH)
    scans = scan_units([make_unit(dependencies={"lodash": "^1.0.0"})], fake_runner, VulnerabilityAnalyzer())
    assert scans[0].score == 75


def test_scan_project_survives_wrong_typed_records(tmp_path, fake_runner):
    write_package_json(tmp_path, {"lodash": "^4.17.0", "express": "^4.18.0"})
    reports = tmp_path / "reports"
    reports.mkdir()
    (reports / "aikido-2024-05-01.json").write_text(
        json.dumps(
            {
                "vulnerabilities": [
                    {"package": "express", "severity": "high", "fixed_version": 4.19},
                    {"id": "AIK-7", "package": "express", "severity": "critical", "fixed_version": "4.19.2"},
                ]
            }
        )
    )
    audit = {
        "advisories": {
            "1": {"module_name": 42, "severity": "high"},
            "2": {"module_name": "lodash", "severity": "high", "patched_versions": ">=4.17.21"},
        }
    }
    fake_runner.add("npm", ["audit"], returncode=1, stdout=json.dumps(audit))

    scans = scan_project(tmp_path, fake_runner, VulnerabilityAnalyzer())

    assert len(scans) == 1
    assert sorted(v.package for v in scans[0].vulnerabilities) == ["express", "lodash"]
    assert scans[0].warnings == []
