"""Tests for the command-line entry point."""

import json

import pytest

from dep_remediation import cli

from conftest import write_package_json

AUDIT = json.dumps(
    {
        "vulnerabilities": {
            "lodash": {
                "name": "lodash",
                "severity": "high",
                "via": [{"source": 3, "title": "Prototype Pollution", "range": "<4.17.21"}],
                "fixAvailable": True,
            }
        }
    }
)


@pytest.fixture
def project(tmp_path, fake_runner, monkeypatch):
    write_package_json(tmp_path, {"lodash": "^4.17.15"})
    fake_runner.add("npm", ["audit"], returncode=1, stdout=AUDIT)
    monkeypatch.setattr(cli, "SubprocessRunner", lambda: fake_runner)
    return tmp_path


def test_dry_run_auto_update(project, fake_runner, capsys):
    before = (project / "package.json").read_bytes()

    code = cli.main(["--root", str(project), "--auto-update", "--report", "--dry-run", "--json"])

    assert code == 0
    output = json.loads(capsys.readouterr().out)
    assert output["report"]["summary"]["high"] == 1
    assert output["updates"][0]["applied"][0]["target"] == "^4.17.21"
    assert output["report_path"] is None
    assert any("Would update" in line for line in output["dry_run_actions"])
    assert (project / "package.json").read_bytes() == before
    assert not (project / "reports").exists()
    assert fake_runner.invoked("npm", "install") == []


def test_scan_writes_report(project, capsys):
    code = cli.main(["--root", str(project), "--scan", "--report"])

    assert code == 0
    reports = list((project / "reports").glob("security-report-*.json"))
    assert len(reports) == 1
    assert json.loads(reports[0].read_text())["summary"]["overall_score"] == 85
    assert "Security Summary" in capsys.readouterr().out


def test_auto_and_force_are_exclusive(project):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--auto-update", "--force-update"])
    assert excinfo.value.code == 2


def test_missing_root_fails(tmp_path):
    assert cli.main(["--root", str(tmp_path / "missing"), "--scan"]) == 1


def test_unexpected_error_exits_1(project, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(cli, "scan_project", boom)
    assert cli.main(["--root", str(project), "--scan"]) == 1


def test_failed_install_exits_1(project, fake_runner):
    fake_runner.rules.insert(0, ("npm", ["install"], {"returncode": 1, "stdout": "", "stderr": "ERESOLVE"}))
    assert cli.main(["--root", str(project), "--auto-update"]) == 1


def test_aikido_status(project, fake_runner, capsys):
    fake_runner.add("git", ["branch", "--format=%(refname:short)"], stdout="main\nscanner-bot/fix-1\n")

    code = cli.main(["--root", str(project), "--aikido", "--json"])

    assert code == 0
    output = json.loads(capsys.readouterr().out)
    assert output["integration"]["configured"] is False
    assert output["integration"]["scanner_branches"] == ["scanner-bot/fix-1"]
    assert "report" not in output
