"""Repository lookup and throwaway clones for remote scans."""

import logging
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

logger = logging.getLogger(__name__)

CLONE_PREFIX = "dep_remediation_"


def repository_root(path: Path) -> Optional[Path]:
    """Working tree root of the repository containing path, or None outside git."""
    try:
        repo = Repo(path, search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return None
    if repo.working_tree_dir is None:
        return None
    return Path(repo.working_tree_dir)


def clone_repo(repo_url: str, branch: str | None = None, depth: int = 1) -> Path:
    """
    Clone into a fresh temporary directory.

    Manifests and lock files are all a scan reads, so history is cut to
    depth commits. The directory is removed again if the clone fails.

    Raises:
        GitCommandError: If cloning fails
    """
    target = Path(tempfile.mkdtemp(prefix=CLONE_PREFIX))
    options: dict = {"depth": depth}
    if branch:
        options["branch"] = branch

    logger.info(f"Cloning {repo_url}{f' ({branch})' if branch else ''}")
    try:
        Repo.clone_from(repo_url, target, **options)
    except GitCommandError:
        shutil.rmtree(target, ignore_errors=True)
        raise
    return target


@contextmanager
def cloned_repo(repo_url: str, branch: str | None = None) -> Generator[Path, None, None]:
    """Yield a shallow checkout that is deleted when the block exits."""
    checkout = clone_repo(repo_url, branch)
    try:
        yield checkout
    finally:
        shutil.rmtree(checkout, ignore_errors=True)
        logger.debug(f"Removed clone {checkout}")
