"""Shared fixtures: a scripted command runner and manifest helpers."""

import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

from dep_remediation.models import (
    CommandResult,
    ManifestUnit,
    Severity,
    VulnerabilityRecord,
    VulnerabilitySource,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeRunner:
    """
    Records every call and answers from a script.

    A rule matches when the command is equal and the call's arguments start
    with the rule's arguments. The first matching rule wins; unmatched calls
    succeed with empty output.
    """

    def __init__(self):
        self.rules: list[tuple[str, list[str], object]] = []
        self.calls: list[tuple[str, list[str], Optional[Path]]] = []
        self._lock = threading.Lock()

    def add(self, command, args, returncode=0, stdout="", stderr="", error=None):
        outcome = error if error is not None else {"returncode": returncode, "stdout": stdout, "stderr": stderr}
        self.rules.append((command, list(args), outcome))
        return self

    def run(self, command, args, cwd=None, timeout=None):
        args = list(args)
        with self._lock:
            self.calls.append((command, args, cwd))
        for rule_command, prefix, outcome in self.rules:
            if rule_command == command and args[: len(prefix)] == prefix:
                if isinstance(outcome, Exception):
                    raise outcome
                return CommandResult(command=command, args=args, **outcome)
        return CommandResult(command=command, args=args, returncode=0)

    def invoked(self, command, *prefix) -> list[list[str]]:
        return [args for cmd, args, _ in self.calls if cmd == command and args[: len(prefix)] == list(prefix)]


@pytest.fixture
def fake_runner():
    return FakeRunner()


def write_package_json(directory: Path, dependencies=None, dev_dependencies=None, **extra) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    content = {"name": directory.name, "version": "1.0.0", **extra}
    if dependencies is not None:
        content["dependencies"] = dependencies
    if dev_dependencies is not None:
        content["devDependencies"] = dev_dependencies
    path = directory / "package.json"
    path.write_text(json.dumps(content, indent=2) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def make_unit(tmp_path):
    """Factory writing a package.json and returning the matching ManifestUnit."""

    def _make(name="root", dependencies=None, dev_dependencies=None):
        directory = tmp_path / name
        manifest = write_package_json(directory, dependencies or {}, dev_dependencies or {})
        return ManifestUnit(
            name=name,
            path=directory,
            manifest_path=manifest,
            dependencies=dict(dependencies or {}),
            dev_dependencies=dict(dev_dependencies or {}),
        )

    return _make


def make_record(
    package="lodash",
    severity=Severity.HIGH,
    age_days=0,
    patched=">=4.17.21",
    record_id=None,
    source=VulnerabilitySource.INTERNAL_AUDIT,
) -> VulnerabilityRecord:
    return VulnerabilityRecord(
        id=record_id or f"GHSA-{package}-{severity.value}",
        package=package,
        severity=severity,
        discovered=NOW - timedelta(days=age_days),
        vulnerable_range="<4.17.21",
        patched_range=patched,
        title=f"{severity.value} issue in {package}",
        source=source,
    )
