from __future__ import annotations

from pathlib import Path

from forgepilot.forge_gateway import (
    ForgeApiError,
    ForgeGateway,
    ForgeNotFoundError,
    PermissionLevel,
)
from forgepilot.git_ops import LocalGit
from forgepilot.models import (
    BranchRef,
    ChangedFile,
    CommentTarget,
    ForgeComment,
    Issue,
    PullRequestSnapshot,
    Repository,
    RepositoryInfo,
)
from forgepilot.shell import CommandError


class FakeGateway(ForgeGateway):
    """In-memory forge with switchable failures, recording every call."""

    def __init__(self, repository: Repository | None = None) -> None:
        self.repository = repository or Repository("o", "r")
        self.default_branch = "main"
        self.issues: dict[int, Issue] = {}
        self.pull_requests: dict[int, PullRequestSnapshot] = {}
        self.issue_comments: dict[int, list[ForgeComment]] = {}
        self.files: dict[int, list[ChangedFile]] = {}
        self.comments: dict[int, tuple[CommentTarget, str]] = {}
        self.branch_shas: dict[str, str] = {}
        self.compare_counts: dict[tuple[str, str], int] = {}
        self.user_types: dict[str, str] = {}
        self.permissions: dict[str, PermissionLevel] = {}
        self.fail: dict[str, ForgeApiError] = {}
        self.calls: list[tuple[str, object]] = []
        self._next_comment_id = 1000

    def _maybe_fail(self, name: str, arg: object = None) -> None:
        self.calls.append((name, arg))
        error = self.fail.get(name)
        if error is not None:
            raise error

    def get_repository(self) -> RepositoryInfo:
        self._maybe_fail("get_repository")
        return RepositoryInfo(full_name=self.repository.full_name, default_branch=self.default_branch)

    def get_issue(self, number: int) -> Issue:
        self._maybe_fail("get_issue", number)
        return self.issues[number]

    def get_pull_request(self, number: int) -> PullRequestSnapshot:
        self._maybe_fail("get_pull_request", number)
        return self.pull_requests[number]

    def list_issue_comments(self, number: int) -> list[ForgeComment]:
        self._maybe_fail("list_issue_comments", number)
        return list(self.issue_comments.get(number, []))

    def list_pull_request_files(self, number: int) -> list[ChangedFile]:
        self._maybe_fail("list_pull_request_files", number)
        return list(self.files.get(number, []))

    def create_issue_comment(self, number: int, body: str) -> ForgeComment:
        self._maybe_fail("create_issue_comment", number)
        return self._store("issue", body)

    def create_review_comment_reply(
        self, pr_number: int, review_comment_id: int, body: str
    ) -> ForgeComment:
        self._maybe_fail("create_review_comment_reply", (pr_number, review_comment_id))
        return self._store("review", body)

    def get_comment(self, comment_id: int, *, target: CommentTarget) -> ForgeComment:
        self._maybe_fail("get_comment", (comment_id, target))
        stored_target, body = self.comments[comment_id]
        if stored_target != target:
            raise ForgeNotFoundError("wrong endpoint", status=404)
        return ForgeComment(comment_id, body, "forgepilot-bot", "", "")

    def update_comment(self, comment_id: int, body: str, *, target: CommentTarget) -> None:
        self._maybe_fail("update_comment", (comment_id, target))
        stored_target, _ = self.comments[comment_id]
        if stored_target != target:
            raise ForgeNotFoundError("wrong endpoint", status=404)
        self.comments[comment_id] = (target, body)

    def list_issues(self, *, state: str, page: int) -> list[Issue]:
        self._maybe_fail("list_issues", (state, page))
        return _page_of([issue for issue in self.issues.values() if state == "all" or issue.state == state], page)

    def list_pull_requests(self, *, state: str, page: int) -> list[PullRequestSnapshot]:
        self._maybe_fail("list_pull_requests", (state, page))
        pulls = [pr for pr in self.pull_requests.values() if state == "all" or pr.state == state]
        return _page_of(pulls, page)

    def list_branches(self, *, page: int) -> list[BranchRef]:
        self._maybe_fail("list_branches", page)
        return _page_of([BranchRef(name, sha) for name, sha in self.branch_shas.items()], page)

    def create_pull_request(
        self, *, title: str, body: str, base: str, head: str
    ) -> PullRequestSnapshot:
        self._maybe_fail("create_pull_request", (base, head))
        number = max([0, *self.issues, *self.pull_requests]) + 1
        snapshot = PullRequestSnapshot(
            number=number,
            title=title,
            body=body,
            author_login="forgepilot-bot",
            state="open",
            head_ref=head,
            head_sha=self.branch_shas.get(head, ""),
            base_ref=base,
            html_url=f"https://forge.local/{self.repository.full_name}/pull/{number}",
        )
        self.pull_requests[number] = snapshot
        return snapshot

    def get_branch_sha(self, branch: str) -> str:
        self._maybe_fail("get_branch_sha", branch)
        if branch not in self.branch_shas:
            raise ForgeNotFoundError(f"branch {branch} not found", status=404)
        return self.branch_shas[branch]

    def compare_branches(self, base: str, head: str) -> int:
        self._maybe_fail("compare_branches", (base, head))
        if (base, head) not in self.compare_counts:
            raise ForgeNotFoundError("compare target not found", status=404)
        return self.compare_counts[(base, head)]

    def get_user_type(self, login: str) -> str:
        self._maybe_fail("get_user_type", login)
        return self.user_types.get(login, "User")

    def get_collaborator_permission(self, login: str) -> PermissionLevel:
        self._maybe_fail("get_collaborator_permission", login)
        return self.permissions.get(login, "write")

    def body_of(self, comment_id: int) -> str:
        return self.comments[comment_id][1]

    def _store(self, target: CommentTarget, body: str) -> ForgeComment:
        self._next_comment_id += 1
        comment_id = self._next_comment_id
        self.comments[comment_id] = (target, body)
        return ForgeComment(comment_id, body, "forgepilot-bot", "", "")


class FakeGit(LocalGit):
    """Local git double that tracks the checked-out branch and local refs."""

    def __init__(self, workspace: Path | None = None) -> None:
        super().__init__(workspace or Path("/work"))
        self.current = "main"
        self.local_shas: dict[str, str] = {}
        self.remote_shas: dict[str, str] = {}
        self.ops: list[tuple[str, ...]] = []
        self.dirty = False
        self.fail_on: set[str] = set()

    def _record(self, *op: str) -> None:
        self.ops.append(op)
        if op[0] in self.fail_on:
            raise CommandError(f"{op[0]} failed", argv=["git", *op], returncode=1, stderr="boom")

    def fetch(self, branch: str) -> None:
        self._record("fetch", branch)

    def fetch_shallow(self, ref: str, *, depth: int) -> None:
        self._record("fetch_shallow", ref, str(depth))

    def checkout(self, branch: str) -> None:
        self._record("checkout", branch)
        self.current = branch

    def pull(self, branch: str) -> None:
        self._record("pull", branch)

    def create_branch(self, branch: str) -> None:
        self._record("create_branch", branch)
        self.local_shas[branch] = self.local_shas.get(self.current, "base-sha")
        self.current = branch

    def current_branch(self) -> str:
        return self.current

    def has_local_branch(self, branch: str) -> bool:
        return branch in self.local_shas

    def has_remote_branch(self, branch: str) -> bool:
        return branch in self.remote_shas

    def branch_sha(self, branch: str) -> str | None:
        self._record("branch_sha", branch)
        return self.local_shas.get(branch) or self.remote_shas.get(branch)

    def add_all(self) -> None:
        self._record("add_all")

    def add_paths(self, paths: list[str]) -> None:
        self._record("add_paths", *paths)
        self.dirty = True

    def remove_paths(self, paths: list[str]) -> None:
        self._record("remove_paths", *paths)
        self.dirty = True

    def status_porcelain(self) -> str:
        return " M README.md\n" if self.dirty else ""

    def has_staged_changes(self) -> bool:
        return self.dirty

    def commit(self, message: str) -> None:
        self._record("commit", message)
        self.dirty = False

    def push(self, branch: str) -> None:
        self._record("push", branch)


def _page_of(items: list, page: int, size: int = 50) -> list:
    start = (page - 1) * size
    return items[start : start + size]


def read_outputs(path: Path) -> dict[str, str]:
    """Parse a step output file the way the workflow runner does; later values win."""
    values: dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").split("\n")
    idx = 0
    while idx < len(lines):
        line = lines[idx]
        idx += 1
        if not line:
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, marker = line.split("<<", 1)
            collected: list[str] = []
            while idx < len(lines) and lines[idx] != marker:
                collected.append(lines[idx])
                idx += 1
            idx += 1
            values[name] = "\n".join(collected)
            continue
        name, _, value = line.partition("=")
        values[name] = value
    return values
