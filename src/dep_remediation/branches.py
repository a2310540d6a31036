"""Discovery, inspection and merging of remediation branches."""

import logging
from pathlib import Path
from typing import Callable, Optional

from .errors import CommandError, MergeConflict
from .models import (
    BranchDetails,
    BranchLocality,
    BranchSource,
    CommandResult,
    MergeResult,
    MergeStatus,
    RemediationBranch,
)
from .policy import DEFAULT_BRANCH_POLICY, BranchPolicy
from .runner import CommandRunner

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]

RECENT_COMMITS = 5


def classify_branch(name: str, policy: BranchPolicy = DEFAULT_BRANCH_POLICY) -> Optional[BranchSource]:
    """
    Classify a branch by name alone.

    Scanner-bot markers take precedence over dependency-bot markers, which
    take precedence over generic security markers. Returns None for
    branches that are not remediation branches.
    """
    lowered = name.lower()
    if any(marker in lowered for marker in policy.scanner_markers):
        return BranchSource.SCANNER_BOT
    if any(marker in lowered for marker in policy.dependency_markers):
        return BranchSource.DEPENDENCY_BOT
    if any(marker in lowered for marker in policy.security_markers):
        return BranchSource.OTHER_SECURITY
    return None


def is_safe_branch(branch: RemediationBranch, policy: BranchPolicy = DEFAULT_BRANCH_POLICY) -> bool:
    """Dependency-bot branches and patch-level fixes may be merged without confirmation."""
    if branch.source == BranchSource.DEPENDENCY_BOT:
        return True
    lowered = branch.name.lower()
    return any(marker in lowered for marker in policy.safe_markers)


class BranchManager:
    """Works with the remediation branches of one repository."""

    def __init__(
        self,
        runner: CommandRunner,
        repo_path: Path,
        policy: BranchPolicy = DEFAULT_BRANCH_POLICY,
    ):
        self.runner = runner
        self.repo_path = Path(repo_path)
        self.policy = policy

    def _git(self, *args: str) -> CommandResult:
        return self.runner.run("git", list(args), cwd=self.repo_path)

    def _branch_names(self, remote: bool) -> list[str]:
        args = ["branch", "--format=%(refname:short)"]
        if remote:
            args.insert(1, "-r")
        result = self._git(*args)
        if not result.ok:
            logger.warning(f"git branch failed: {result.stderr.strip()}")
            return []
        names = []
        for line in result.stdout.splitlines():
            name = line.strip().lstrip("* ").strip()
            if not name or name.endswith("/HEAD") or name == self.policy.remote:
                continue
            names.append(name)
        return names

    def list_security_branches(self) -> list[RemediationBranch]:
        """
        List local and remote remediation branches.

        Local branches come first, then remote ones, each sorted by name.
        A git failure yields an empty list.
        """
        branches: list[RemediationBranch] = []
        try:
            listings = [
                (BranchLocality.LOCAL, self._branch_names(remote=False)),
                (BranchLocality.REMOTE, self._branch_names(remote=True)),
            ]
        except CommandError as e:
            logger.error(f"Error checking branches: {e}")
            return []

        for locality, names in listings:
            for name in sorted(set(names)):
                source = classify_branch(name, self.policy)
                if source is not None:
                    branches.append(RemediationBranch(name=name, source=source, locality=locality))

        logger.info(f"Found {len(branches)} security branch(es)")
        return branches

    def get_branch_details(self, name: str) -> BranchDetails:
        """Recent commits, changed files and diff stat of a branch against the default branch."""
        default = self.policy.default_branch
        details = BranchDetails(name=name)
        try:
            commits = self._git("log", "--format=%h %s", f"-n{RECENT_COMMITS}", name, f"^{default}")
            if commits.ok:
                details.commits = [line for line in commits.stdout.splitlines() if line.strip()]

            files = self._git("diff", "--name-only", f"{default}...{name}")
            if files.ok:
                details.changed_files = [line for line in files.stdout.splitlines() if line.strip()]

            stat = self._git("diff", "--stat", f"{default}...{name}")
            if stat.ok:
                details.diff_stat = stat.stdout.rstrip()
        except CommandError as e:
            logger.error(f"Error getting branch details for {name}: {e}")
        return details

    def current_branch(self) -> str:
        result = self._git("branch", "--show-current")
        return result.stdout.strip() if result.ok else ""

    def _is_clean(self) -> bool:
        result = self._git("status", "--porcelain", "--untracked-files=no")
        return result.ok and not result.stdout.strip()

    def _ensure_integration_branch(self, confirm: Confirm) -> Optional[MergeResult]:
        current = self.current_branch()
        logger.info(f"Current branch: {current or '(detached)'}")
        if current in self.policy.integration_branches:
            return None

        default = self.policy.default_branch
        if not confirm(f"Switch to {default} branch first? [y/n]: "):
            return MergeResult(
                branch="",
                status=MergeStatus.CANCELLED,
                message=f"Merges must target an integration branch; still on {current or 'detached HEAD'}",
            )

        checkout = self._git("checkout", default)
        if not checkout.ok:
            return MergeResult(
                branch="",
                status=MergeStatus.FAILED,
                message=f"Could not switch to {default}: {checkout.stderr.strip()}",
            )
        pull = self._git("pull", "--ff-only", self.policy.remote, default)
        if not pull.ok:
            logger.warning(f"Could not pull latest {default}: {pull.stderr.strip()}")
        else:
            logger.info(f"Switched to {default} and pulled latest changes")
        return None

    def _merge_no_ff(self, name: str) -> None:
        """
        Merge with --no-ff, aborting on any failure.

        Raises:
            MergeConflict: when the merge stopped on conflicts
            RuntimeError: when git refused the merge for another reason
        """
        result = self._git("merge", "--no-ff", "--no-edit", name)
        if result.ok:
            return

        conflicted = self._git("diff", "--name-only", "--diff-filter=U")
        files = [line for line in conflicted.stdout.splitlines() if line.strip()] if conflicted.ok else []
        output = f"{result.stdout}\n{result.stderr}"

        if self._git("rev-parse", "-q", "--verify", "MERGE_HEAD").ok:
            abort = self._git("merge", "--abort")
            if not abort.ok:
                self._git("reset", "--merge")

        if files or "CONFLICT" in output:
            raise MergeConflict(name, files)
        raise RuntimeError(result.stderr.strip() or result.stdout.strip() or "git merge failed")

    def merge_branch(
        self,
        name: str,
        confirm: Confirm,
        delete_after: bool = False,
        preview: bool = True,
    ) -> MergeResult:
        """
        Merge a remediation branch into the integration branch.

        On conflict the merge is aborted so the working tree is left as it
        was, and a conflict result is returned for manual resolution.
        """
        logger.info(f"Preparing to merge: {name}")
        try:
            blocked = self._ensure_integration_branch(confirm)
            if blocked is not None:
                return blocked.model_copy(update={"branch": name})

            if not self._is_clean():
                return MergeResult(
                    branch=name,
                    status=MergeStatus.FAILED,
                    message="Working tree has uncommitted changes; commit or stash them first",
                )

            if preview:
                details = self.get_branch_details(name)
                logger.info(f"Merge preview: {len(details.commits)} commits, {len(details.changed_files)} files")
                if not confirm(f"Proceed with merge of {name}? [y/n]: "):
                    return MergeResult(branch=name, status=MergeStatus.CANCELLED, message="Merge cancelled")

            try:
                self._merge_no_ff(name)
            except MergeConflict as e:
                logger.error(f"MergeConflict: {e}")
                return MergeResult(
                    branch=name, status=MergeStatus.CONFLICT, message=str(e), conflicted_files=e.files
                )
            except RuntimeError as e:
                logger.error(f"Merge failed: {e}")
                return MergeResult(branch=name, status=MergeStatus.FAILED, message=str(e))

            logger.info(f"Successfully merged {name}")
            result = MergeResult(branch=name, status=MergeStatus.MERGED, message=f"Merged {name}")
            if delete_after:
                self._delete_local(name, result)
            return result
        except CommandError as e:
            logger.error(f"Merge of {name} failed: {e}")
            return MergeResult(branch=name, status=MergeStatus.FAILED, message=str(e))

    def _delete_local(self, name: str, result: MergeResult) -> None:
        prefix = f"{self.policy.remote}/"
        local_name = name[len(prefix):] if name.startswith(prefix) else name
        deleted = self._git("branch", "-d", local_name)
        if deleted.ok:
            result.deleted = True
            logger.info(f"Deleted local branch: {local_name}")
        else:
            note = f"Could not delete branch {local_name} (may be remote-only): {deleted.stderr.strip()}"
            result.notes.append(note)
            logger.info(note)

    def auto_merge_safe_branches(
        self,
        branches: list[RemediationBranch],
        confirm: Confirm,
        delete_after: bool = False,
    ) -> list[MergeResult]:
        """
        Merge dependency-bot and patch-level branches without prompting.

        Every other branch is merged only if confirm approves it
        explicitly. Integration-branch checks still go through confirm.
        """
        results = []
        for branch in branches:
            safe = is_safe_branch(branch, self.policy)
            if not safe and not confirm(f"{branch.name} is not a safe branch. Merge anyway? [y/n]: "):
                results.append(
                    MergeResult(
                        branch=branch.name,
                        status=MergeStatus.CANCELLED,
                        message="Requires explicit confirmation",
                    )
                )
                continue
            logger.info(f"Merging {branch.name}...")
            results.append(
                self.merge_branch(branch.name, confirm, delete_after=delete_after, preview=not safe)
            )
        return results
