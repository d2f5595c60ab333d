from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal


EntityType = Literal["issue", "pr"]
PullRequestState = Literal["open", "closed", "merged"]
CommentTarget = Literal["issue", "review"]


@dataclass(frozen=True)
class Repository:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class EventContext:
    """Trigger-relevant view of one forge event, built once per job."""

    event_name: str
    event_action: str | None
    repository: Repository
    actor: str
    entity_type: EntityType
    entity_number: int
    entity_title: str = ""
    entity_body: str = ""
    entity_author: str = ""
    comment_body: str | None = None
    comment_id: int | None = None
    comment_author: str | None = None
    review_body: str | None = None
    review_author: str | None = None
    assignee: str | None = None
    label: str | None = None
    pr_state: PullRequestState | None = None
    run_id: str = ""

    @property
    def is_pr(self) -> bool:
        return self.entity_type == "pr"

    @property
    def is_review_comment_event(self) -> bool:
        return self.event_name == "pull_request_review_comment"

    @property
    def is_comment_event(self) -> bool:
        return self.event_name in {"issue_comment", "pull_request_review_comment"}


@dataclass(frozen=True)
class ForgeComment:
    comment_id: int
    body: str
    user_login: str
    html_url: str
    created_at: str


@dataclass(frozen=True)
class ChangedFile:
    path: str
    status: str
    additions: int
    deletions: int


@dataclass(frozen=True)
class RepositoryInfo:
    full_name: str
    default_branch: str


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    body: str
    author_login: str
    state: str
    html_url: str


@dataclass(frozen=True)
class BranchRef:
    name: str
    sha: str


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    body: str
    author_login: str
    state: PullRequestState
    head_ref: str
    head_sha: str
    base_ref: str
    html_url: str

    @property
    def is_open(self) -> bool:
        return self.state == "open"


@dataclass(frozen=True)
class EntityData:
    """Issue or pull request content fetched from the forge for one job."""

    entity_type: EntityType
    number: int
    title: str
    body: str
    author_login: str
    comments: tuple[ForgeComment, ...]
    pull_request: PullRequestSnapshot | None = None
    changed_files: tuple[ChangedFile, ...] = ()

    @property
    def is_pr(self) -> bool:
        return self.entity_type == "pr"


@dataclass(frozen=True)
class BranchInfo:
    base_branch: str
    claude_branch: str | None
    current_branch: str


class CommentPhase(Enum):
    CREATED = "created"
    WORKING = "working"
    BRANCH_LINKED = "branch_linked"
    FINAL = "final"


@dataclass(frozen=True)
class TrackingComment:
    comment_id: int
    target: CommentTarget
    current_body: str
    phase: CommentPhase


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    cost_usd: float | None = None
    duration_ms: int | None = None
    duration_api_ms: int | None = None
    error: str | None = None
    output_text: str | None = None


@dataclass(frozen=True)
class ToolCapabilitySet:
    allowed: tuple[str, ...]
    disallowed: tuple[str, ...]
