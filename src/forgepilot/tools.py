"""Resolution of the tool allow/deny lists handed to the agent."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import logging

from forgepilot.models import ToolCapabilitySet
from forgepilot.observability import log_event


LOGGER = logging.getLogger("forgepilot.tools")

FORGE_SERVER = "forge"
LOCAL_GIT_SERVER = "local_git_ops"
SIGNED_FILE_OPS_SERVER = "forge_file_ops"
CI_SERVER = "forge_actions"


def _tool(server: str, name: str) -> str:
    return f"mcp__{server}__{name}"


LOCAL_GIT_COMMIT_TOOLS: tuple[str, ...] = (
    _tool(LOCAL_GIT_SERVER, "commit_files"),
    _tool(LOCAL_GIT_SERVER, "delete_files"),
)

BASE_ALLOWED_TOOLS: tuple[str, ...] = (
    "Edit",
    "MultiEdit",
    "Glob",
    "Grep",
    "LS",
    "Read",
    "Write",
    *LOCAL_GIT_COMMIT_TOOLS,
    _tool(LOCAL_GIT_SERVER, "push_branch"),
    _tool(LOCAL_GIT_SERVER, "create_pull_request"),
    _tool(LOCAL_GIT_SERVER, "checkout_branch"),
    _tool(LOCAL_GIT_SERVER, "create_branch"),
    _tool(LOCAL_GIT_SERVER, "git_status"),
    _tool(FORGE_SERVER, "get_issue"),
    _tool(FORGE_SERVER, "get_issue_comments"),
    _tool(FORGE_SERVER, "add_issue_comment"),
    _tool(FORGE_SERVER, "get_comment"),
    _tool(FORGE_SERVER, "list_issues"),
    _tool(FORGE_SERVER, "get_repository"),
    _tool(FORGE_SERVER, "list_pull_requests"),
    _tool(FORGE_SERVER, "get_pull_request"),
    _tool(FORGE_SERVER, "list_branches"),
    _tool(FORGE_SERVER, "get_branch"),
)

DEFAULT_DISALLOWED_TOOLS: tuple[str, ...] = ("WebSearch", "WebFetch")

CI_TOOLS: tuple[str, ...] = (
    _tool(CI_SERVER, "get_ci_status"),
    _tool(CI_SERVER, "get_workflow_run_details"),
    _tool(CI_SERVER, "download_job_log"),
)

COMMIT_SIGNING_TOOLS: tuple[str, ...] = (
    _tool(SIGNED_FILE_OPS_SERVER, "commit_files"),
    _tool(SIGNED_FILE_OPS_SERVER, "delete_files"),
)

UPDATE_ISSUE_COMMENT_TOOL = _tool(FORGE_SERVER, "update_issue_comment")
UPDATE_REVIEW_COMMENT_TOOL = _tool(FORGE_SERVER, "update_pull_request_comment")


@dataclass(frozen=True)
class ToolPolicy:
    base_allowed: tuple[str, ...] = BASE_ALLOWED_TOOLS
    default_disallowed: tuple[str, ...] = DEFAULT_DISALLOWED_TOOLS
    ci_tools: tuple[str, ...] = CI_TOOLS
    signing_tools: tuple[str, ...] = COMMIT_SIGNING_TOOLS
    replaced_by_signing: tuple[str, ...] = LOCAL_GIT_COMMIT_TOOLS


DEFAULT_TOOL_POLICY = ToolPolicy()


@dataclass(frozen=True)
class ToolFlags:
    read_ci: bool = False
    is_pr: bool = False
    use_commit_signing: bool = False


def comment_tool_for(*, review_comment: bool) -> str:
    return UPDATE_REVIEW_COMMENT_TOOL if review_comment else UPDATE_ISSUE_COMMENT_TOOL


def build_tools(
    policy: ToolPolicy,
    *,
    mode_additions: Iterable[str] = (),
    user_allowed: Iterable[str] = (),
    user_disallowed: Iterable[str] = (),
    flags: ToolFlags = ToolFlags(),
) -> ToolCapabilitySet:
    """Merge defaults, mode additions and user overrides into disjoint tool lists.

    Explicit user allows remove tools from the default deny list. Explicit user
    denies are applied last and win over everything, including an explicit
    allow of the same tool. A tool left on the deny list is dropped from the
    allow list even when the policy or a mode adds it. Both outputs keep
    first-insertion order.
    """
    user_allowed_list = _dedupe(user_allowed)
    user_disallowed_list = _dedupe(user_disallowed)

    allowed: list[str] = []
    replaced = set(policy.replaced_by_signing) if flags.use_commit_signing else set()
    for tool in policy.base_allowed:
        if tool not in replaced:
            allowed.append(tool)
    allowed.extend(mode_additions)
    if flags.read_ci and flags.is_pr:
        allowed.extend(policy.ci_tools)
    if flags.use_commit_signing:
        allowed.extend(policy.signing_tools)
    allowed.extend(user_allowed_list)

    explicitly_allowed = set(user_allowed_list)
    disallowed = [tool for tool in policy.default_disallowed if tool not in explicitly_allowed]
    disallowed.extend(user_disallowed_list)
    resolved_disallowed = _dedupe(disallowed)

    denied = set(resolved_disallowed)
    resolved_allowed = tuple(tool for tool in _dedupe(allowed) if tool not in denied)

    log_event(
        LOGGER,
        "tools_resolved",
        allowed_count=len(resolved_allowed),
        disallowed_count=len(resolved_disallowed),
        ci_tools=flags.read_ci and flags.is_pr,
        commit_signing=flags.use_commit_signing,
    )
    return ToolCapabilitySet(allowed=resolved_allowed, disallowed=resolved_disallowed)


def parse_tool_list(value: str) -> tuple[str, ...]:
    """Split a comma or newline separated tool list, keeping commas inside parentheses."""
    out: list[str] = []
    for line in value.splitlines():
        for item in _split_top_level_commas(line):
            stripped = item.strip()
            if stripped:
                out.append(stripped)
    return _dedupe(out)


def _split_top_level_commas(line: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in line:
        if ch == "(":
            depth += 1
        elif ch == ")" and depth > 0:
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    parts.append("".join(current))
    return parts


def _dedupe(items: Iterable[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return tuple(out)
