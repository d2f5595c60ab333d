"""Tool servers the agent talks to over stdio.

``forgepilot-local-git-tools`` exposes git operations on the job checkout and
``forgepilot-forge-tools`` exposes read/comment access to the forge API. Both
read the environment written by ``tool_servers.build_tool_server_config``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass
import json
import logging
import os
from pathlib import Path
import sys

from mcp.server.fastmcp import FastMCP

from forgepilot.config import ConfigError
from forgepilot.forge_gateway import ForgeGateway, create_gateway
from forgepilot.git_ops import LocalGit
from forgepilot.models import Repository
from forgepilot.observability import configure_logging, log_event, register_secret
from forgepilot.provider import ProviderProfile, detect_provider
from forgepilot.tools import FORGE_SERVER, LOCAL_GIT_SERVER


LOGGER = logging.getLogger("forgepilot.agent_tools")

DEFAULT_API_URL = "https://api.github.com"


class ToolInputError(ValueError):
    """Raised when the agent passes arguments a tool refuses to act on."""


@dataclass(frozen=True)
class ToolServerSettings:
    repository: Repository
    token: str
    api_url: str
    profile: ProviderProfile
    branch: str | None
    base_branch: str | None
    repo_dir: Path


def load_tool_server_settings(env: Mapping[str, str]) -> ToolServerSettings:
    def value(key: str) -> str | None:
        raw = env.get(key)
        if raw is None or not raw.strip():
            return None
        return raw.strip()

    missing = [key for key in ("GITHUB_TOKEN", "REPO_OWNER", "REPO_NAME") if value(key) is None]
    if missing:
        raise ConfigError(f"Tool server environment is missing: {', '.join(missing)}")
    api_url = (value("GITEA_API_URL") or DEFAULT_API_URL).rstrip("/")
    try:
        profile = detect_provider(api_url, override=value("FORGE_PROVIDER"))
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    return ToolServerSettings(
        repository=Repository(owner=str(value("REPO_OWNER")), name=str(value("REPO_NAME"))),
        token=str(value("GITHUB_TOKEN")),
        api_url=api_url,
        profile=profile,
        branch=value("BRANCH_NAME"),
        base_branch=value("BASE_BRANCH"),
        repo_dir=Path(value("REPO_DIR") or os.getcwd()),
    )


def _repo_relative(paths: list[str]) -> list[str]:
    if not paths:
        raise ToolInputError("At least one file path is required")
    cleaned: list[str] = []
    for raw in paths:
        path = raw[1:] if raw.startswith("/") else raw
        if not path.strip() or ".." in Path(path).parts:
            raise ToolInputError(f"File path must stay inside the repository: {raw!r}")
        cleaned.append(path)
    return cleaned


class LocalGitTools:
    def __init__(self, git: LocalGit, gateway: ForgeGateway) -> None:
        self._git = git
        self._gateway = gateway

    def create_branch(self, branch_name: str, base_branch: str) -> str:
        """Create a new branch from an up-to-date base branch."""
        self._git.checkout(base_branch)
        self._git.pull(base_branch)
        self._git.create_branch(branch_name)
        return f"Successfully created and checked out branch: {branch_name}"

    def checkout_branch(self, branch_name: str) -> str:
        """Switch the checkout to an existing branch."""
        self._git.checkout(branch_name)
        return f"Checked out branch: {branch_name}"

    def commit_files(self, files: list[str], message: str) -> str:
        """Stage the given repository-relative files and commit them to the current branch."""
        paths = _repo_relative(files)
        self._git.add_paths(paths)
        self._git.commit(message)
        log_event(LOGGER, "agent_commit", files=len(paths))
        return f"Successfully committed {len(paths)} file(s): {', '.join(paths)}"

    def delete_files(self, files: list[str], message: str) -> str:
        """Remove the given repository-relative files and commit the deletion."""
        paths = _repo_relative(files)
        self._git.remove_paths(paths)
        self._git.commit(message)
        log_event(LOGGER, "agent_delete", files=len(paths))
        return f"Successfully deleted {len(paths)} file(s): {', '.join(paths)}"

    def push_branch(self) -> str:
        """Push the current branch to origin. History is never rewritten."""
        branch = self._git.current_branch()
        if not branch:
            raise ToolInputError("Cannot push from a detached HEAD")
        self._git.push(branch)
        return f"Successfully pushed branch: {branch}"

    def create_pull_request(
        self, title: str, body: str, base_branch: str, head_branch: str | None = None
    ) -> str:
        """Open a pull request; the head defaults to the current branch."""
        head = head_branch or self._git.current_branch()
        if not head:
            raise ToolInputError("head_branch is required when HEAD is detached")
        pull = self._gateway.create_pull_request(title=title, body=body, base=base_branch, head=head)
        return f"Successfully created pull request #{pull.number}: {pull.html_url}"

    def git_status(self) -> str:
        """Show the current branch and porcelain status of the checkout."""
        status = self._git.status_porcelain().strip()
        return f"Current branch: {self._git.current_branch()}\nStatus:\n{status or 'Working tree clean'}"


def _as_json(value: object) -> str:
    if isinstance(value, list):
        return json.dumps([asdict(item) for item in value], indent=2)
    return json.dumps(asdict(value), indent=2)


class ForgeTools:
    def __init__(self, gateway: ForgeGateway) -> None:
        self._gateway = gateway

    def get_issue(self, issue_number: int) -> str:
        return _as_json(self._gateway.get_issue(issue_number))

    def get_issue_comments(self, issue_number: int) -> str:
        return _as_json(self._gateway.list_issue_comments(issue_number))

    def add_issue_comment(self, issue_number: int, body: str) -> str:
        return _as_json(self._gateway.create_issue_comment(issue_number, body))

    def get_comment(self, comment_id: int) -> str:
        return _as_json(self._gateway.get_comment(comment_id, target="issue"))

    def update_issue_comment(self, comment_id: int, body: str) -> str:
        self._gateway.update_comment(comment_id, body, target="issue")
        return f"Updated comment {comment_id}"

    def update_pull_request_comment(self, comment_id: int, body: str) -> str:
        """Update a review-thread comment on a pull request."""
        self._gateway.update_comment(comment_id, body, target="review")
        return f"Updated review comment {comment_id}"

    def list_issues(self, state: str = "open", page: int = 1) -> str:
        return _as_json(self._gateway.list_issues(state=state, page=page))

    def get_repository(self) -> str:
        return _as_json(self._gateway.get_repository())

    def list_pull_requests(self, state: str = "open", page: int = 1) -> str:
        return _as_json(self._gateway.list_pull_requests(state=state, page=page))

    def get_pull_request(self, pull_number: int) -> str:
        return _as_json(self._gateway.get_pull_request(pull_number))

    def list_branches(self, page: int = 1) -> str:
        return _as_json(self._gateway.list_branches(page=page))

    def get_branch(self, branch: str) -> str:
        return json.dumps({"name": branch, "sha": self._gateway.get_branch_sha(branch)}, indent=2)


_LOCAL_GIT_TOOL_NAMES = (
    "create_branch",
    "checkout_branch",
    "commit_files",
    "delete_files",
    "push_branch",
    "create_pull_request",
    "git_status",
)

_FORGE_TOOL_NAMES = (
    "get_issue",
    "get_issue_comments",
    "add_issue_comment",
    "get_comment",
    "update_issue_comment",
    "update_pull_request_comment",
    "list_issues",
    "get_repository",
    "list_pull_requests",
    "get_pull_request",
    "list_branches",
    "get_branch",
)


def _register(server: FastMCP, tools: object, names: tuple[str, ...]) -> FastMCP:
    for name in names:
        handler = getattr(tools, name)
        server.add_tool(handler, name=name, description=(handler.__doc__ or name.replace("_", " ")).strip())
    return server


def build_local_git_server(tools: LocalGitTools) -> FastMCP:
    return _register(FastMCP(LOCAL_GIT_SERVER), tools, _LOCAL_GIT_TOOL_NAMES)


def build_forge_server(tools: ForgeTools) -> FastMCP:
    return _register(FastMCP(FORGE_SERVER), tools, _FORGE_TOOL_NAMES)


def _serve(env: Mapping[str, str] | None, build: str) -> int:
    configure_logging(False)
    try:
        settings = load_tool_server_settings(os.environ if env is None else env)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    register_secret(settings.token)
    gateway = create_gateway(
        settings.profile,
        api_url=settings.api_url,
        token=settings.token,
        repository=settings.repository,
    )
    if build == LOCAL_GIT_SERVER:
        server = build_local_git_server(LocalGitTools(LocalGit(settings.repo_dir), gateway))
    else:
        server = build_forge_server(ForgeTools(gateway))
    log_event(LOGGER, "tool_server_started", server=build, repository=settings.repository.full_name)
    server.run()
    return 0


def local_git_main(env: Mapping[str, str] | None = None) -> int:
    return _serve(env, LOCAL_GIT_SERVER)


def forge_main(env: Mapping[str, str] | None = None) -> int:
    return _serve(env, FORGE_SERVER)
