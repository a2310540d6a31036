"""Tests for the interactive console state machine and workflows."""

import json

import pytest

from dep_remediation.branches import BranchManager
from dep_remediation.console import Action, ConsoleState, InteractiveConsole, transition
from dep_remediation.notifications import NotificationConfig, NotificationDispatcher
from dep_remediation.orchestrator import UpdateOrchestrator

from conftest import write_package_json

AUDIT = json.dumps(
    {
        "vulnerabilities": {
            "lodash": {
                "name": "lodash",
                "severity": "critical",
                "via": [{"source": 7, "title": "Prototype Pollution", "range": "<2.0.0"}],
                "fixAvailable": {"name": "lodash", "version": "2.0.0"},
            }
        }
    }
)


@pytest.mark.parametrize(
    "choice,action",
    [
        ("1", Action.VIEW_VULNERABILITIES),
        ("v", Action.VIEW_VULNERABILITIES),
        ("2", Action.MANAGE_BRANCHES),
        ("B", Action.MANAGE_BRANCHES),
        ("3", Action.PERFORM_ACTIONS),
        ("4", Action.RUN_SCAN),
        ("5", Action.CONFIGURE_NOTIFICATIONS),
        (" e ", Action.EMERGENCY_RESPONSE),
        ("r", Action.REFRESH),
        ("9", Action.INVALID),
        ("", Action.INVALID),
    ],
)
def test_menu_transitions_stay_in_menu(choice, action):
    assert transition(ConsoleState.MENU, choice) == (ConsoleState.MENU, action)


@pytest.mark.parametrize("choice", ["q", "quit", "EXIT"])
def test_quit_exits(choice):
    assert transition(ConsoleState.MENU, choice) == (ConsoleState.EXITED, Action.QUIT)


def test_exited_is_terminal():
    assert transition(ConsoleState.EXITED, "1") == (ConsoleState.EXITED, Action.NONE)


@pytest.fixture
def project(tmp_path, fake_runner):
    write_package_json(tmp_path, {"lodash": "^1.0.0"})
    fake_runner.add("npm", ["audit"], returncode=1, stdout=AUDIT)
    fake_runner.add("npm", ["outdated"], stdout="")
    fake_runner.add("git", ["branch", "--format=%(refname:short)"], stdout="main\nsecurity/patch-lodash\n")
    return tmp_path


def make_console(project, fake_runner, answers, dry_run=False):
    replies = iter(answers)
    output = []

    def read(question):
        try:
            return next(replies)
        except StopIteration:
            raise EOFError()

    console = InteractiveConsole(
        [project],
        fake_runner,
        UpdateOrchestrator(fake_runner, dry_run=dry_run),
        BranchManager(fake_runner, project),
        NotificationDispatcher(NotificationConfig(email_enabled=False), []),
        project / "reports",
        base=project,
        input_fn=read,
        output_fn=output.append,
    )
    return console, output


def test_accept_fix_updates_manifest(project, fake_runner):
    console, output = make_console(project, fake_runner, ["1", "1", "1", "y", "q"])

    console.run()

    assert console.state == ConsoleState.EXITED
    manifest = json.loads((project / "package.json").read_text())
    assert manifest["dependencies"]["lodash"] == "^2.0.0"
    assert len(fake_runner.invoked("npm", "install")) == 1
    assert output[-1] == "Goodbye!"


def test_closed_input_exits_without_side_effects(project, fake_runner):
    console, output = make_console(project, fake_runner, ["1", "1", "1"])

    console.run()

    assert console.state == ConsoleState.EXITED
    assert json.loads((project / "package.json").read_text())["dependencies"]["lodash"] == "^1.0.0"
    assert fake_runner.invoked("npm", "install") == []


def test_invalid_choice_is_reported(project, fake_runner):
    console, output = make_console(project, fake_runner, ["x", "q"])
    console.run()
    assert "Invalid option. Please try again.\n" in output


def test_session_context_loaded(project, fake_runner):
    console, _ = make_console(project, fake_runner, [])
    console.refresh()

    assert [s.unit.name for s in console.context.scans] == ["root"]
    assert [b.name for b in console.context.branches] == ["security/patch-lodash"]
    counts = console.context.severity_counts()
    assert sum(counts.values()) == 1


def test_emergency_report_in_dry_run(project, fake_runner):
    console, output = make_console(project, fake_runner, ["6", "3", "q"], dry_run=True)
    console.run()
    assert not (project / "reports").exists()
    assert any("Security Summary" in line for line in output)


def test_emergency_fix_applies_critical_only(project, fake_runner):
    console, _ = make_console(project, fake_runner, ["e", "1", "y", "q"])
    console.run()
    manifest = json.loads((project / "package.json").read_text())
    assert manifest["dependencies"]["lodash"] == "^2.0.0"


def test_notification_status(project, fake_runner):
    console, output = make_console(project, fake_runner, ["5", "n", "q"])
    console.run()
    assert "   email: disabled" in output
