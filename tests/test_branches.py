"""Tests for remediation branch discovery, classification and merging."""

import shutil
import subprocess

import pytest

from dep_remediation.branches import BranchManager, classify_branch, is_safe_branch
from dep_remediation.errors import CommandError
from dep_remediation.git_utils import repository_root
from dep_remediation.models import BranchLocality, BranchSource, MergeStatus, RemediationBranch
from dep_remediation.runner import SubprocessRunner


def always(answer):
    return lambda question: answer


def branch(name, source=BranchSource.OTHER_SECURITY, locality=BranchLocality.LOCAL):
    return RemediationBranch(name=name, source=source, locality=locality)


@pytest.fixture
def on_main(fake_runner):
    fake_runner.add("git", ["branch", "--show-current"], stdout="main")
    fake_runner.add("git", ["status"], stdout="")
    return fake_runner


@pytest.mark.parametrize(
    "name,source",
    [
        ("scanner-bot/fix-lodash", BranchSource.SCANNER_BOT),
        ("aikido-security-update", BranchSource.SCANNER_BOT),
        ("dependabot/npm_and_yarn/qs-6.5.3", BranchSource.DEPENDENCY_BOT),
        ("dependency-bot/security-axios", BranchSource.DEPENDENCY_BOT),
        ("security/patch-express", BranchSource.OTHER_SECURITY),
        ("fix/Vulnerability-1234", BranchSource.OTHER_SECURITY),
        ("feature/login", None),
        ("main", None),
    ],
)
def test_classify_branch(name, source):
    assert classify_branch(name) == source


def test_safe_branches():
    assert is_safe_branch(branch("dependabot/npm/qs", BranchSource.DEPENDENCY_BOT))
    assert is_safe_branch(branch("security/patch-lodash"))
    assert not is_safe_branch(branch("security/upgrade-react"))
    assert not is_safe_branch(branch("scanner-bot/fix-lodash", BranchSource.SCANNER_BOT))


class TestListing:
    def test_local_then_remote_sorted(self, fake_runner, tmp_path):
        fake_runner.add(
            "git",
            ["branch", "--format=%(refname:short)"],
            stdout="main\nsecurity/fix-lodash\nfeature/login\nscanner-bot/patch-1\n",
        )
        fake_runner.add(
            "git",
            ["branch", "-r"],
            stdout="origin/HEAD\norigin\norigin/main\norigin/dependabot/npm_and_yarn/qs-6.5.3\n",
        )

        branches = BranchManager(fake_runner, tmp_path).list_security_branches()

        assert [(b.name, b.source, b.locality) for b in branches] == [
            ("scanner-bot/patch-1", BranchSource.SCANNER_BOT, BranchLocality.LOCAL),
            ("security/fix-lodash", BranchSource.OTHER_SECURITY, BranchLocality.LOCAL),
            ("origin/dependabot/npm_and_yarn/qs-6.5.3", BranchSource.DEPENDENCY_BOT, BranchLocality.REMOTE),
        ]

    def test_git_unavailable_yields_empty_list(self, fake_runner, tmp_path):
        fake_runner.add("git", ["branch"], error=CommandError("git", "executable not found"))
        assert BranchManager(fake_runner, tmp_path).list_security_branches() == []

    def test_branch_details(self, fake_runner, tmp_path):
        fake_runner.add("git", ["log"], stdout="abc1234 Bump qs from 6.5.2 to 6.5.3\n")
        fake_runner.add("git", ["diff", "--name-only"], stdout="package.json\npackage-lock.json\n")
        fake_runner.add("git", ["diff", "--stat"], stdout=" 2 files changed, 4 insertions(+)\n")

        details = BranchManager(fake_runner, tmp_path).get_branch_details("dependabot/qs")

        assert details.commits == ["abc1234 Bump qs from 6.5.2 to 6.5.3"]
        assert details.changed_files == ["package.json", "package-lock.json"]
        assert "2 files changed" in details.diff_stat
        assert fake_runner.invoked("git", "diff", "--name-only") == [["diff", "--name-only", "main...dependabot/qs"]]


class TestMerge:
    def test_successful_merge_and_delete(self, on_main, tmp_path):
        result = BranchManager(on_main, tmp_path).merge_branch(
            "origin/dependabot/qs", always(True), delete_after=True
        )

        assert result.status == MergeStatus.MERGED
        assert result.deleted is True
        assert on_main.invoked("git", "merge") == [["merge", "--no-ff", "--no-edit", "origin/dependabot/qs"]]
        assert on_main.invoked("git", "branch", "-d") == [["branch", "-d", "dependabot/qs"]]

    def test_delete_failure_is_a_note(self, on_main, tmp_path):
        on_main.add("git", ["branch", "-d"], returncode=1, stderr="error: branch 'x' not found.")
        result = BranchManager(on_main, tmp_path).merge_branch("security/x", always(True), delete_after=True)

        assert result.status == MergeStatus.MERGED
        assert result.deleted is False
        assert "Could not delete" in result.notes[0]

    def test_conflict_is_aborted(self, on_main, tmp_path):
        on_main.add("git", ["diff", "--name-only", "--diff-filter=U"], stdout="package.json\n")
        on_main.add(
            "git",
            ["merge", "--no-ff"],
            returncode=1,
            stdout="Auto-merging package.json\nCONFLICT (content): Merge conflict in package.json\n",
        )

        result = BranchManager(on_main, tmp_path).merge_branch("security/fix", always(True))

        assert result.status == MergeStatus.CONFLICT
        assert result.conflicted_files == ["package.json"]
        assert on_main.invoked("git", "merge", "--abort") == [["merge", "--abort"]]

    def test_refused_merge_without_conflict_fails(self, on_main, tmp_path):
        on_main.add("git", ["rev-parse"], returncode=1)
        on_main.add("git", ["merge", "--no-ff"], returncode=128, stderr="merge: security/x - not something we can merge")

        result = BranchManager(on_main, tmp_path).merge_branch("security/x", always(True))

        assert result.status == MergeStatus.FAILED
        assert "not something we can merge" in result.message
        assert on_main.invoked("git", "merge", "--abort") == []

    def test_dirty_tree_blocks_merge(self, fake_runner, tmp_path):
        fake_runner.add("git", ["branch", "--show-current"], stdout="main")
        fake_runner.add("git", ["status"], stdout=" M package.json")

        result = BranchManager(fake_runner, tmp_path).merge_branch("security/x", always(True))

        assert result.status == MergeStatus.FAILED
        assert fake_runner.invoked("git", "merge") == []

    def test_requires_integration_branch(self, fake_runner, tmp_path):
        fake_runner.add("git", ["branch", "--show-current"], stdout="feature/login")

        result = BranchManager(fake_runner, tmp_path).merge_branch("security/x", always(False))

        assert result.status == MergeStatus.CANCELLED
        assert result.branch == "security/x"
        assert fake_runner.invoked("git", "checkout") == []

    def test_switches_to_main_and_tolerates_pull_failure(self, fake_runner, tmp_path):
        fake_runner.add("git", ["branch", "--show-current"], stdout="feature/login")
        fake_runner.add("git", ["pull"], returncode=1, stderr="fatal: no remote")

        result = BranchManager(fake_runner, tmp_path).merge_branch("security/x", always(True), preview=False)

        assert result.status == MergeStatus.MERGED
        assert fake_runner.invoked("git", "checkout") == [["checkout", "main"]]

    def test_declined_preview_cancels(self, on_main, tmp_path):
        result = BranchManager(on_main, tmp_path).merge_branch("security/x", always(False))
        assert result.status == MergeStatus.CANCELLED
        assert on_main.invoked("git", "merge") == []


def test_auto_merge_only_safe_branches_without_confirmation(on_main, tmp_path):
    branches = [
        branch("dependabot/npm/qs", BranchSource.DEPENDENCY_BOT),
        branch("security/patch-lodash"),
        branch("security/upgrade-react"),
    ]

    results = BranchManager(on_main, tmp_path).auto_merge_safe_branches(branches, always(False))

    assert [r.status for r in results] == [MergeStatus.MERGED, MergeStatus.MERGED, MergeStatus.CANCELLED]
    assert results[2].message == "Requires explicit confirmation"
    assert on_main.invoked("git", "log") == []


def _git(repo, *args):
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_real_conflict_leaves_tree_clean(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo, "config", "user.email", "dev@example.com")
    _git(repo, "config", "user.name", "Dev")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "package.json").write_text('{"dependencies": {"lodash": "^1.0.0"}}\n')
    _git(repo, "add", "package.json")
    _git(repo, "commit", "-m", "initial")

    _git(repo, "checkout", "-b", "security/fix-lodash")
    (repo / "package.json").write_text('{"dependencies": {"lodash": "^2.0.0"}}\n')
    _git(repo, "commit", "-am", "fix lodash")

    _git(repo, "checkout", "main")
    (repo / "package.json").write_text('{"dependencies": {"lodash": "^1.5.0"}}\n')
    _git(repo, "commit", "-am", "bump lodash")

    manager = BranchManager(SubprocessRunner(), repo)
    assert [b.name for b in manager.list_security_branches()] == ["security/fix-lodash"]

    result = manager.merge_branch("security/fix-lodash", always(True))

    assert result.status == MergeStatus.CONFLICT
    assert result.conflicted_files == ["package.json"]
    status = subprocess.run(["git", "status", "--porcelain"], cwd=repo, capture_output=True, text=True)
    assert status.stdout.strip() == ""
    assert not (repo / ".git" / "MERGE_HEAD").exists()
    assert (repo / "package.json").read_text() == '{"dependencies": {"lodash": "^1.5.0"}}\n'


def test_repository_root_outside_git(tmp_path):
    assert repository_root(tmp_path / "missing") is None


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_repository_root_from_workspace_unit(tmp_path):
    repo = tmp_path / "repo"
    (repo / "client").mkdir(parents=True)
    _git(repo, "init")
    assert repository_root(repo / "client").resolve() == repo.resolve()
