from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    """Raised when a required git command fails."""


class GitRepository:
    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise GitError("git executable not found on PATH") from exc
        if check and proc.returncode != 0:
            raise GitError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def is_repo(self) -> bool:
        proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def ensure_repo(self) -> bool:
        """Run ``git init`` when needed. Returns ``True`` if a repository was created."""
        if self.is_repo():
            return False
        logger.info("No git repository in %s; running git init", self.repo_root)
        try:
            self._run_git(["init"])
        except GitError as exc:
            raise GitError(f"git init failed: {exc}") from exc
        return True

    def head(self) -> str | None:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def commits_since(self, before: str | None) -> list[str]:
        """Commit hashes reachable from HEAD but not ``before``, oldest first."""
        if self.head() is None:
            return []
        revision = f"{before}..HEAD" if before else "HEAD"
        proc = self._run_git(["rev-list", "--reverse", revision])
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]
