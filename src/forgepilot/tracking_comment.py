"""The single progress/result comment a job owns on the forge.

Every write is a full-body replace keyed by comment id. Final rendering is a
pure function of the current body and the job outcome, and rendering an
already finalized body again yields the same bytes.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import re

from forgepilot.forge_gateway import ForgeApiError, ForgeGateway
from forgepilot.models import (
    CommentPhase,
    CommentTarget,
    EntityType,
    ExecutionResult,
    TrackingComment,
)
from forgepilot.observability import log_event, log_warning_event, mask_secrets
from forgepilot.provider import ForgeLinks


LOGGER = logging.getLogger("forgepilot.tracking_comment")

SPINNER_HTML = (
    '<img src="https://raw.githubusercontent.com/markwylde/claude-code-gitea-action/'
    'refs/heads/gitea/assets/spinner.gif" width="14px" height="14px" '
    'style="vertical-align: middle; margin-left: 4px;" />'
)
PLACEHOLDER_TEXT = "I'll analyze this and get back to you."
SEPARATOR = "---"
JOB_RUN_LABEL = "[View job run]("
BRANCH_LABEL = "[View branch]("
CREATE_PR_LABEL = "[Create a PR]("
ERROR_BLOCK_OPEN = "<details><summary>Error details</summary>"
ERROR_BLOCK_CLOSE = "</details>"

_PROTOCOL_LINK = re.compile(r"\[(?:View job run|View branch|Create a PR)\]\([^)]*\)")

_ALLOWED_TRANSITIONS: dict[CommentPhase, frozenset[CommentPhase]] = {
    CommentPhase.CREATED: frozenset(
        {CommentPhase.BRANCH_LINKED, CommentPhase.WORKING, CommentPhase.FINAL}
    ),
    CommentPhase.BRANCH_LINKED: frozenset(
        {CommentPhase.BRANCH_LINKED, CommentPhase.WORKING, CommentPhase.FINAL}
    ),
    CommentPhase.WORKING: frozenset({CommentPhase.BRANCH_LINKED, CommentPhase.FINAL}),
    CommentPhase.FINAL: frozenset({CommentPhase.FINAL}),
}


class CommentOperationError(RuntimeError):
    pass


@dataclass(frozen=True)
class FinalOutcome:
    success: bool
    trigger_username: str | None
    entity_type: EntityType
    entity_number: int
    run_id: str
    base_branch: str
    claude_branch: str | None = None
    branch_has_changes: bool = False
    result: ExecutionResult | None = None
    error: str | None = None

    @property
    def shows_branch_links(self) -> bool:
        return self.claude_branch is not None and self.branch_has_changes


def format_duration(duration_ms: int) -> str:
    total_seconds = max(duration_ms, 0) // 1000
    minutes, seconds = divmod(total_seconds, 60)
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def render_created_body(agent_name: str, job_run_url: str) -> str:
    return (
        f"{agent_name} is working… {SPINNER_HTML}\n\n"
        f"{PLACEHOLDER_TEXT}\n\n"
        f"{JOB_RUN_LABEL}{job_run_url})"
    )


def render_branch_linked_body(body: str, branch_url: str) -> str:
    lines = [line for line in body.rstrip("\n").split("\n") if not line.startswith(BRANCH_LABEL)]
    return "\n".join(lines) + f"\n{BRANCH_LABEL}{branch_url})"


def pull_request_title(entity_type: EntityType, number: int, agent_name: str) -> str:
    label = "PR" if entity_type == "pr" else "Issue"
    return f"{label} #{number}: Changes from {agent_name}"


def pull_request_body(entity_type: EntityType, number: int, agent_name: str) -> str:
    label = "pull request" if entity_type == "pr" else "issue"
    return f"This PR addresses {label} #{number}\n\nGenerated by {agent_name}"


def extract_agent_content(body: str, agent_name: str) -> str:
    """Return the agent-authored part of a tracking comment body.

    Everything the protocol itself writes is dropped: the working line with the
    spinner, the placeholder text, the header and cost lines, separators,
    trailing error blocks, and the job-run, branch and create-PR links wherever
    they appear in a line. Both the working and the final body go through the
    same cleanup, repeated until nothing changes.
    """
    lines = body.replace("\r\n", "\n").split("\n")
    if _is_final_body(lines, agent_name):
        separators = [idx for idx, line in enumerate(lines) if line.strip() == SEPARATOR]
        if len(separators) >= 2:
            lines = lines[separators[0] + 1 : separators[-1]]
        else:
            lines = lines[1:]

    while True:
        kept = _drop_protocol_lines(_drop_trailing_error_blocks(lines))
        if kept == lines:
            break
        lines = kept
    return "\n".join(lines).strip("\n").strip()


def _drop_trailing_error_blocks(lines: list[str]) -> list[str]:
    end = len(lines)
    while True:
        while end and not lines[end - 1].strip():
            end -= 1
        if not end or lines[end - 1].strip() != ERROR_BLOCK_CLOSE:
            break
        opens = [idx for idx in range(end - 1) if lines[idx].strip() == ERROR_BLOCK_OPEN]
        if not opens:
            break
        end = opens[-1]
    return lines[:end]


def _drop_protocol_lines(lines: list[str]) -> list[str]:
    kept: list[str] = []
    for line in lines:
        if SPINNER_HTML in line or line.strip() == PLACEHOLDER_TEXT:
            continue
        cleaned = _PROTOCOL_LINK.sub("", line)
        if cleaned != line:
            cleaned = cleaned.rstrip()
            if not cleaned:
                continue
        kept.append(cleaned)
    return kept


def _error_block(error: str) -> str:
    # No line inside the block may read as the block opener.
    lines = [
        line.replace("<details>", "&lt;details>") if line.strip() == ERROR_BLOCK_OPEN else line
        for line in mask_secrets(error).strip().split("\n")
    ]
    body = "\n".join(lines)
    return f"{ERROR_BLOCK_OPEN}\n\n```\n{body}\n```\n{ERROR_BLOCK_CLOSE}"


def render_final_body(
    current_body: str,
    outcome: FinalOutcome,
    *,
    agent_name: str,
    links: ForgeLinks,
) -> str:
    result = outcome.result
    duration = (
        format_duration(result.duration_ms)
        if result is not None and result.duration_ms is not None
        else None
    )
    if outcome.success:
        header = f"**{agent_name} finished @{outcome.trigger_username or 'unknown'}'s task"
        header += f" in {duration}**" if duration else "**"
    else:
        header = f"**{agent_name} encountered an error"
        header += f" after {duration}**" if duration else "**"

    head_lines = [header]
    if result is not None and result.cost_usd is not None:
        head_lines.append(f"Cost: ${result.cost_usd:.4f}")

    sections = ["\n".join(head_lines), SEPARATOR]
    content = extract_agent_content(current_body, agent_name)
    if content:
        sections.append(content)
    error = outcome.error if outcome.error else None
    if error is None and not outcome.success and result is not None:
        error = result.error
    if error:
        sections.append(_error_block(error))
    sections.append(SEPARATOR)

    link_lines: list[str] = []
    if outcome.shows_branch_links and outcome.claude_branch is not None:
        compare_url = links.compare_url(
            base_branch=outcome.base_branch,
            branch=outcome.claude_branch,
            title=pull_request_title(outcome.entity_type, outcome.entity_number, agent_name),
            body=pull_request_body(outcome.entity_type, outcome.entity_number, agent_name),
        )
        link_lines.append(f"{CREATE_PR_LABEL}{compare_url})")
    link_lines.append(f"{JOB_RUN_LABEL}{links.job_run_url(outcome.run_id)})")
    if outcome.shows_branch_links and outcome.claude_branch is not None:
        link_lines.append(f"{BRANCH_LABEL}{links.branch_url(outcome.claude_branch)})")
    sections.append("\n".join(link_lines))
    return "\n\n".join(sections)


def phase_of_body(body: str, agent_name: str) -> CommentPhase:
    lines = body.split("\n")
    if _is_final_body(lines, agent_name):
        return CommentPhase.FINAL
    if any(line.startswith(BRANCH_LABEL) for line in lines):
        return CommentPhase.BRANCH_LINKED
    return CommentPhase.WORKING


def _is_final_body(lines: list[str], agent_name: str) -> bool:
    header = re.compile(rf"^\*\*{re.escape(agent_name)} (finished @|encountered an error)")
    for line in lines:
        if line.strip():
            return header.match(line) is not None
    return False


class TrackingCommentProtocol:
    def __init__(self, gateway: ForgeGateway, links: ForgeLinks, *, agent_name: str) -> None:
        self._gateway = gateway
        self._links = links
        self._agent_name = agent_name

    def create(
        self,
        *,
        entity_number: int,
        run_id: str,
        review_comment_id: int | None = None,
    ) -> TrackingComment:
        """Post the initial working comment.

        With ``review_comment_id`` the comment is posted as a reply in that
        inline review thread, otherwise on the issue/PR conversation. A failed
        first attempt falls back once to the conversation endpoint.
        """
        body = render_created_body(self._agent_name, self._links.job_run_url(run_id))
        target: CommentTarget = "review" if review_comment_id is not None else "issue"
        try:
            if review_comment_id is not None:
                created = self._gateway.create_review_comment_reply(
                    entity_number, review_comment_id, body
                )
            else:
                created = self._gateway.create_issue_comment(entity_number, body)
        except ForgeApiError as exc:
            log_warning_event(
                LOGGER,
                "tracking_comment_fallback",
                entity_number=entity_number,
                primary_target=target,
                error_type=type(exc).__name__,
            )
            target = "issue"
            try:
                created = self._gateway.create_issue_comment(entity_number, body)
            except ForgeApiError as fallback_exc:
                raise CommentOperationError(
                    f"Failed to create the tracking comment on #{entity_number}: {fallback_exc}"
                ) from fallback_exc

        comment = TrackingComment(
            comment_id=created.comment_id,
            target=target,
            current_body=body,
            phase=CommentPhase.CREATED,
        )
        log_event(
            LOGGER,
            "tracking_comment_created",
            comment_id=comment.comment_id,
            target=target,
            entity_number=entity_number,
        )
        return comment

    def load(self, comment_id: int, *, target: CommentTarget) -> TrackingComment:
        try:
            fetched = self._gateway.get_comment(comment_id, target=target)
        except ForgeApiError as exc:
            raise CommentOperationError(
                f"Failed to read tracking comment {comment_id}: {exc}"
            ) from exc
        return TrackingComment(
            comment_id=comment_id,
            target=target,
            current_body=fetched.body,
            phase=phase_of_body(fetched.body, self._agent_name),
        )

    def link_branch(self, comment: TrackingComment, branch: str) -> TrackingComment:
        body = render_branch_linked_body(comment.current_body, self._links.branch_url(branch))
        updated = self._write(comment, body, CommentPhase.BRANCH_LINKED)
        log_event(LOGGER, "tracking_comment_branch_linked", comment_id=comment.comment_id, branch=branch)
        return updated

    def mark_working(self, comment: TrackingComment) -> TrackingComment:
        _check_transition(comment.phase, CommentPhase.WORKING)
        return replace(comment, phase=CommentPhase.WORKING)

    def finalize(self, comment: TrackingComment, outcome: FinalOutcome) -> TrackingComment:
        body = render_final_body(
            comment.current_body, outcome, agent_name=self._agent_name, links=self._links
        )
        updated = self._write(comment, body, CommentPhase.FINAL)
        log_event(
            LOGGER,
            "tracking_comment_finalized",
            comment_id=comment.comment_id,
            success=outcome.success,
            branch_links=outcome.shows_branch_links,
        )
        return updated

    def _write(self, comment: TrackingComment, body: str, phase: CommentPhase) -> TrackingComment:
        _check_transition(comment.phase, phase)
        try:
            self._gateway.update_comment(comment.comment_id, body, target=comment.target)
        except ForgeApiError as exc:
            raise CommentOperationError(
                f"Failed to update tracking comment {comment.comment_id}: {exc}"
            ) from exc
        return replace(comment, current_body=body, phase=phase)


def _check_transition(current: CommentPhase, target: CommentPhase) -> None:
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise ValueError(f"Illegal tracking comment transition {current.value} -> {target.value}")
