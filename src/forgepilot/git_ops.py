from __future__ import annotations

from pathlib import Path
import logging

from forgepilot.observability import log_event
from forgepilot.shell import run, succeeds


LOGGER = logging.getLogger("forgepilot.git_ops")


class LocalGit:
    """Git operations against the job's working checkout."""

    def __init__(self, workspace: Path) -> None:
        self.workspace = workspace

    def _git(self, *args: str) -> list[str]:
        return ["git", "-C", str(self.workspace), *args]

    def fetch(self, branch: str) -> None:
        log_event(LOGGER, "git_fetch", branch=branch)
        run(self._git("fetch", "origin", branch))

    def fetch_shallow(self, ref: str, *, depth: int) -> None:
        log_event(LOGGER, "git_fetch", branch=ref, depth=depth)
        run(self._git("fetch", "origin", f"--depth={depth}", ref))

    def checkout(self, branch: str) -> None:
        log_event(LOGGER, "git_checkout", branch=branch)
        run(self._git("checkout", branch))

    def pull(self, branch: str) -> None:
        run(self._git("pull", "origin", branch))

    def create_branch(self, branch: str) -> None:
        log_event(LOGGER, "git_branch_created", branch=branch)
        run(self._git("checkout", "-b", branch))

    def current_branch(self) -> str:
        return run(self._git("branch", "--show-current")).strip()

    def has_local_branch(self, branch: str) -> bool:
        return succeeds(
            self._git("show-ref", "--verify", "--quiet", f"refs/heads/{branch}")
        )

    def has_remote_branch(self, branch: str) -> bool:
        return succeeds(
            self._git("show-ref", "--verify", "--quiet", f"refs/remotes/origin/{branch}")
        )

    def branch_sha(self, branch: str) -> str | None:
        """Resolve a branch tip, preferring the local ref over the remote-tracking one.

        Returns ``None`` when neither ref exists in the checkout.
        """
        if self.has_local_branch(branch):
            return run(self._git("rev-parse", f"refs/heads/{branch}")).strip()
        if self.has_remote_branch(branch):
            return run(self._git("rev-parse", f"refs/remotes/origin/{branch}")).strip()
        return None

    def add_all(self) -> None:
        run(self._git("add", "-A"))

    def add_paths(self, paths: list[str]) -> None:
        run(self._git("add", "--", *paths))

    def remove_paths(self, paths: list[str]) -> None:
        run(self._git("rm", "--", *paths))

    def status_porcelain(self) -> str:
        return run(self._git("status", "--porcelain"))

    def has_staged_changes(self) -> bool:
        return not succeeds(self._git("diff", "--cached", "--quiet"))

    def commit(self, message: str) -> None:
        run(self._git("commit", "-m", message))

    def push(self, branch: str) -> None:
        log_event(LOGGER, "git_push", branch=branch)
        run(self._git("push", "origin", f"HEAD:refs/heads/{branch}"))
