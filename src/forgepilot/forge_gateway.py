from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from typing import Literal, cast
from urllib.parse import quote

import requests

from forgepilot.models import (
    BranchRef,
    ChangedFile,
    CommentTarget,
    ForgeComment,
    Issue,
    PullRequestSnapshot,
    PullRequestState,
    Repository,
    RepositoryInfo,
)
from forgepilot.observability import log_event
from forgepilot.provider import ProviderProfile


LOGGER = logging.getLogger("forgepilot.forge_gateway")
PermissionLevel = Literal["admin", "write", "read", "none"]
_REQUEST_TIMEOUT_SECONDS = 30
_PAGE_SIZE = 50


class ForgeApiError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ForgeNotFoundError(ForgeApiError):
    """The requested forge object does not exist (HTTP 404)."""


class ForgeGateway(ABC):
    """Capability-typed view of the forge REST API used by one job."""

    repository: Repository

    @abstractmethod
    def get_repository(self) -> RepositoryInfo:
        """Return repository metadata, including the default branch."""

    @abstractmethod
    def get_issue(self, number: int) -> Issue:
        """Fetch one issue."""

    @abstractmethod
    def get_pull_request(self, number: int) -> PullRequestSnapshot:
        """Fetch one pull request including head/base refs."""

    @abstractmethod
    def list_issue_comments(self, number: int) -> list[ForgeComment]:
        """List the general comments of an issue or pull request."""

    @abstractmethod
    def list_pull_request_files(self, number: int) -> list[ChangedFile]:
        """List files changed by a pull request."""

    @abstractmethod
    def create_issue_comment(self, number: int, body: str) -> ForgeComment:
        """Create a general comment on an issue or pull request."""

    @abstractmethod
    def create_review_comment_reply(
        self, pr_number: int, review_comment_id: int, body: str
    ) -> ForgeComment:
        """Reply inside the thread of an inline review comment."""

    @abstractmethod
    def get_comment(self, comment_id: int, *, target: CommentTarget) -> ForgeComment:
        """Read a comment from the issue-comment or review-comment endpoint."""

    @abstractmethod
    def update_comment(self, comment_id: int, body: str, *, target: CommentTarget) -> None:
        """Replace the full body of a comment on the matching endpoint."""

    @abstractmethod
    def list_issues(self, *, state: str, page: int) -> list[Issue]:
        """List one page of issues, pull requests excluded."""

    @abstractmethod
    def list_pull_requests(self, *, state: str, page: int) -> list[PullRequestSnapshot]:
        """List one page of pull requests."""

    @abstractmethod
    def list_branches(self, *, page: int) -> list[BranchRef]:
        """List one page of branches with their tip commits."""

    @abstractmethod
    def create_pull_request(
        self, *, title: str, body: str, base: str, head: str
    ) -> PullRequestSnapshot:
        """Open a pull request from ``head`` into ``base``."""

    @abstractmethod
    def get_branch_sha(self, branch: str) -> str:
        """Return the tip commit sha of a branch; ForgeNotFoundError if missing."""

    @abstractmethod
    def compare_branches(self, base: str, head: str) -> int:
        """Return how many commits ``head`` has that ``base`` does not."""

    @abstractmethod
    def get_user_type(self, login: str) -> str:
        """Return the account type of a user (``User``, ``Bot``, ...)."""

    @abstractmethod
    def get_collaborator_permission(self, login: str) -> PermissionLevel:
        """Return the repository permission level of a user."""


class RestForgeGateway(ForgeGateway):
    """Shared REST plumbing; subclasses only describe where endpoints differ."""

    _auth_scheme = "token"

    def __init__(
        self,
        *,
        api_url: str,
        token: str,
        repository: Repository,
        session: requests.Session | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.repository = repository
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"{self._auth_scheme} {token}",
                "Accept": "application/json",
                "User-Agent": "forgepilot",
            }
        )

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.repository.owner}/{self.repository.name}"

    def get_repository(self) -> RepositoryInfo:
        payload_obj = self._expect_object(self._api_json("GET", self._repo_path), "repository")
        info = RepositoryInfo(
            full_name=_as_string(payload_obj.get("full_name")) or self.repository.full_name,
            default_branch=_as_string(payload_obj.get("default_branch")) or "main",
        )
        log_event(LOGGER, "forge_read", endpoint="repository", default_branch=info.default_branch)
        return info

    def get_issue(self, number: int) -> Issue:
        payload_obj = self._expect_object(
            self._api_json("GET", f"{self._repo_path}/issues/{number}"), "issue"
        )
        log_event(LOGGER, "forge_read", endpoint="issue", issue_number=number)
        return _parse_issue(payload_obj)

    def get_pull_request(self, number: int) -> PullRequestSnapshot:
        payload_obj = self._expect_object(
            self._api_json("GET", f"{self._repo_path}/pulls/{number}"), "pull request"
        )
        snapshot = _parse_pull_request(payload_obj)
        log_event(
            LOGGER,
            "forge_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
            state=snapshot.state,
        )
        return snapshot

    def list_issue_comments(self, number: int) -> list[ForgeComment]:
        comments = [
            _parse_comment(item)
            for item in self._paginate(f"{self._repo_path}/issues/{number}/comments")
        ]
        log_event(
            LOGGER, "forge_read", endpoint="issue_comments", issue_number=number, count=len(comments)
        )
        return comments

    def list_pull_request_files(self, number: int) -> list[ChangedFile]:
        files: list[ChangedFile] = []
        for item in self._paginate(f"{self._repo_path}/pulls/{number}/files"):
            filename = _as_string(item.get("filename"))
            if not filename:
                continue
            files.append(
                ChangedFile(
                    path=filename,
                    status=_as_string(item.get("status")) or "modified",
                    additions=_as_optional_int(item.get("additions")) or 0,
                    deletions=_as_optional_int(item.get("deletions")) or 0,
                )
            )
        log_event(
            LOGGER, "forge_read", endpoint="pull_request_files", pr_number=number, count=len(files)
        )
        return files

    def create_issue_comment(self, number: int, body: str) -> ForgeComment:
        path = f"{self._repo_path}/issues/{number}/comments"
        comment = _parse_comment(
            self._expect_object(self._api_json("POST", path, payload={"body": body}), "comment")
        )
        log_event(
            LOGGER, "forge_comment_created", issue_number=number, comment_id=comment.comment_id
        )
        return comment

    def create_review_comment_reply(
        self, pr_number: int, review_comment_id: int, body: str
    ) -> ForgeComment:
        path = f"{self._repo_path}/pulls/{pr_number}/comments/{review_comment_id}/replies"
        comment = _parse_comment(
            self._expect_object(self._api_json("POST", path, payload={"body": body}), "comment")
        )
        log_event(
            LOGGER,
            "forge_review_reply_created",
            pr_number=pr_number,
            review_comment_id=review_comment_id,
            comment_id=comment.comment_id,
        )
        return comment

    def get_comment(self, comment_id: int, *, target: CommentTarget) -> ForgeComment:
        payload_obj = self._expect_object(
            self._api_json("GET", self._comment_path(comment_id, target)), "comment"
        )
        log_event(LOGGER, "forge_read", endpoint=f"{target}_comment", comment_id=comment_id)
        return _parse_comment(payload_obj)

    def update_comment(self, comment_id: int, body: str, *, target: CommentTarget) -> None:
        self._api_json("PATCH", self._comment_path(comment_id, target), payload={"body": body})
        log_event(LOGGER, "forge_comment_updated", comment_id=comment_id, target=target)

    def list_issues(self, *, state: str, page: int) -> list[Issue]:
        payload = self._api_json(
            "GET", f"{self._repo_path}/issues", params={**self._issue_list_params(page), "state": state}
        )
        issues = [
            _parse_issue(item)
            for item in _object_items(payload, "issues")
            if item.get("pull_request") is None
        ]
        log_event(LOGGER, "forge_read", endpoint="issues", state=state, page=page, count=len(issues))
        return issues

    def list_pull_requests(self, *, state: str, page: int) -> list[PullRequestSnapshot]:
        payload = self._api_json(
            "GET", f"{self._repo_path}/pulls", params={**self._page_params(page), "state": state}
        )
        pulls = [_parse_pull_request(item) for item in _object_items(payload, "pulls")]
        log_event(LOGGER, "forge_read", endpoint="pulls", state=state, page=page, count=len(pulls))
        return pulls

    def list_branches(self, *, page: int) -> list[BranchRef]:
        payload = self._api_json("GET", f"{self._repo_path}/branches", params=self._page_params(page))
        branches = [
            BranchRef(
                name=_as_string(item.get("name")),
                sha=self._commit_sha(_as_object_dict(item.get("commit"))),
            )
            for item in _object_items(payload, "branches")
        ]
        log_event(LOGGER, "forge_read", endpoint="branches", page=page, count=len(branches))
        return branches

    def create_pull_request(
        self, *, title: str, body: str, base: str, head: str
    ) -> PullRequestSnapshot:
        payload_obj = self._expect_object(
            self._api_json(
                "POST",
                f"{self._repo_path}/pulls",
                payload={"title": title, "body": body, "base": base, "head": head},
            ),
            "pull request",
        )
        snapshot = _parse_pull_request(payload_obj)
        log_event(
            LOGGER, "forge_pull_request_created", pr_number=snapshot.number, base=base, head=head
        )
        return snapshot

    def get_branch_sha(self, branch: str) -> str:
        path = f"{self._repo_path}/branches/{quote(branch, safe='')}"
        payload_obj = self._expect_object(self._api_json("GET", path), "branch")
        commit = _as_object_dict(payload_obj.get("commit"))
        sha = self._commit_sha(commit)
        if not sha:
            raise ForgeApiError(f"Unexpected forge response: branch {branch} has no commit sha")
        log_event(LOGGER, "forge_read", endpoint="branch", branch=branch)
        return sha

    def get_collaborator_permission(self, login: str) -> PermissionLevel:
        path = f"{self._repo_path}/collaborators/{quote(login, safe='')}/permission"
        payload_obj = self._expect_object(self._api_json("GET", path), "permission")
        permission = _as_string(payload_obj.get("permission")).strip().lower()
        if permission not in {"admin", "write", "read", "none"}:
            permission = "none"
        log_event(LOGGER, "forge_read", endpoint="collaborator_permission", permission=permission)
        return cast(PermissionLevel, permission)

    def _comment_path(self, comment_id: int, target: CommentTarget) -> str:
        if target == "review":
            return f"{self._repo_path}/pulls/comments/{comment_id}"
        return f"{self._repo_path}/issues/comments/{comment_id}"

    def _commit_sha(self, commit: dict[str, object] | None) -> str:
        if commit is None:
            return ""
        return _as_string(commit.get("sha"))

    def _page_params(self, page: int) -> dict[str, object]:
        return {"per_page": _PAGE_SIZE, "page": page}

    def _issue_list_params(self, page: int) -> dict[str, object]:
        return self._page_params(page)

    def _paginate(self, path: str) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        page = 1
        while True:
            payload = self._api_json("GET", path, params=self._page_params(page))
            if not isinstance(payload, list):
                raise ForgeApiError(f"Unexpected forge response: expected list for {path}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    items.append(item_obj)
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        return items

    def _expect_object(self, payload: object, what: str) -> dict[str, object]:
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise ForgeApiError(f"Unexpected forge response: expected object for {what}")
        return payload_obj

    def _api_json(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, object] | None = None,
        params: dict[str, object] | None = None,
    ) -> object:
        url = f"{self.api_url}{path}"
        try:
            response = self._session.request(
                method.upper(),
                url,
                json=payload,
                params=params,
                timeout=_REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            log_event(
                LOGGER,
                "forge_request_failed",
                method=method.upper(),
                path=path,
                error_type=type(exc).__name__,
            )
            raise ForgeApiError(f"Forge request {method.upper()} {path} failed: {exc}") from exc

        if response.status_code == 404:
            raise ForgeNotFoundError(f"Forge object not found: {path}", status=404)
        if response.status_code < 200 or response.status_code >= 300:
            message = _error_message(response)
            log_event(
                LOGGER,
                "forge_request_failed",
                method=method.upper(),
                path=path,
                status=response.status_code,
            )
            raise ForgeApiError(
                f"Forge API request {method.upper()} {path} failed with status "
                f"{response.status_code}: {message}",
                status=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ForgeApiError(f"Forge API returned invalid JSON for {path}") from exc


class GitHubGateway(RestForgeGateway):
    _auth_scheme = "Bearer"

    def __init__(
        self,
        *,
        api_url: str,
        token: str,
        repository: Repository,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(api_url=api_url, token=token, repository=repository, session=session)
        self._session.headers["Accept"] = "application/vnd.github+json"

    def compare_branches(self, base: str, head: str) -> int:
        path = f"{self._repo_path}/compare/{quote(base, safe='')}...{quote(head, safe='')}"
        payload_obj = self._expect_object(self._api_json("GET", path), "compare")
        total = payload_obj.get("total_commits")
        if total is None:
            total = payload_obj.get("ahead_by")
        count = _as_int(total, field="total_commits")
        log_event(LOGGER, "forge_read", endpoint="compare", base=base, head=head, commits=count)
        return count

    def get_user_type(self, login: str) -> str:
        payload_obj = self._expect_object(
            self._api_json("GET", f"/users/{quote(login, safe='')}"), "user"
        )
        user_type = _as_string(payload_obj.get("type"))
        log_event(LOGGER, "forge_read", endpoint="user", login=login, user_type=user_type)
        return user_type


class GiteaGateway(RestForgeGateway):
    def compare_branches(self, base: str, head: str) -> int:
        raise ForgeApiError("Branch comparison is not supported by this forge")

    def get_user_type(self, login: str) -> str:
        raise ForgeApiError("User type lookups are not reliable on this forge")

    def _commit_sha(self, commit: dict[str, object] | None) -> str:
        if commit is None:
            return ""
        return _as_string(commit.get("id")) or _as_string(commit.get("sha"))

    def _page_params(self, page: int) -> dict[str, object]:
        return {"limit": _PAGE_SIZE, "page": page}

    def _issue_list_params(self, page: int) -> dict[str, object]:
        return {**self._page_params(page), "type": "issues"}


def create_gateway(
    profile: ProviderProfile,
    *,
    api_url: str,
    token: str,
    repository: Repository,
    session: requests.Session | None = None,
) -> RestForgeGateway:
    gateway_cls: type[RestForgeGateway] = GiteaGateway if profile.is_reduced else GitHubGateway
    log_event(LOGGER, "forge_gateway_selected", provider=profile.name, api_url=api_url)
    return gateway_cls(api_url=api_url, token=token, repository=repository, session=session)


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text.strip() or "<empty>"
    data_obj = _as_object_dict(data)
    if data_obj is not None and isinstance(data_obj.get("message"), str):
        return cast(str, data_obj["message"])
    return response.text.strip() or "<empty>"


def _object_items(payload: object, what: str) -> list[dict[str, object]]:
    if not isinstance(payload, list):
        raise ForgeApiError(f"Unexpected forge response: expected list of {what}")
    items: list[dict[str, object]] = []
    for item in payload:
        item_obj = _as_object_dict(item)
        if item_obj is not None:
            items.append(item_obj)
    return items


def _parse_issue(payload_obj: dict[str, object]) -> Issue:
    return Issue(
        number=_as_int(payload_obj.get("number"), field="number"),
        title=_as_string(payload_obj.get("title")),
        body=_as_string(payload_obj.get("body")),
        author_login=_user_login(payload_obj.get("user")),
        state=_as_string(payload_obj.get("state")).lower(),
        html_url=_as_string(payload_obj.get("html_url")),
    )


def _parse_pull_request(payload_obj: dict[str, object]) -> PullRequestSnapshot:
    head = _as_object_dict(payload_obj.get("head"))
    base = _as_object_dict(payload_obj.get("base"))
    if head is None or base is None:
        raise ForgeApiError("Unexpected forge response: missing pull request head/base")
    return PullRequestSnapshot(
        number=_as_int(payload_obj.get("number"), field="number"),
        title=_as_string(payload_obj.get("title")),
        body=_as_string(payload_obj.get("body")),
        author_login=_user_login(payload_obj.get("user")),
        state=_pull_request_state(payload_obj),
        head_ref=_as_string(head.get("ref")),
        head_sha=_as_string(head.get("sha")),
        base_ref=_as_string(base.get("ref")),
        html_url=_as_string(payload_obj.get("html_url")),
    )


def _parse_comment(item: dict[str, object]) -> ForgeComment:
    return ForgeComment(
        comment_id=_as_int(item.get("id"), field="id"),
        body=_as_string(item.get("body")),
        user_login=_user_login(item.get("user")),
        html_url=_as_string(item.get("html_url")),
        created_at=_as_string(item.get("created_at")),
    )


def _pull_request_state(payload_obj: dict[str, object]) -> PullRequestState:
    if payload_obj.get("merged") is True:
        return "merged"
    state = _as_string(payload_obj.get("state")).strip().lower()
    if state == "merged":
        return "merged"
    if state == "closed":
        return "closed"
    return "open"


def _user_login(value: object) -> str:
    user_obj = _as_object_dict(value)
    if user_obj is None:
        return ""
    login = user_obj.get("login")
    return login.strip() if isinstance(login, str) else ""


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise ForgeApiError(f"Unexpected forge response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise ForgeApiError(f"Unexpected forge response value for {field}: {value}") from exc
    raise ForgeApiError(f"Unexpected forge response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None
