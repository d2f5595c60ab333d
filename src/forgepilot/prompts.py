from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import logging
from pathlib import Path
import re

from forgepilot.config import TriggerConfig
from forgepilot.models import BranchInfo, ChangedFile, EntityData, EventContext, ForgeComment
from forgepilot.observability import log_event


LOGGER = logging.getLogger("forgepilot.prompts")

PROMPT_DIR_NAME = "forgepilot-prompts"
PROMPT_FILE_NAME = "prompt.txt"

_VARIABLE_PATTERN = re.compile(r"\$([A-Z][A-Z0-9_]*)")


@dataclass(frozen=True)
class EventClassification:
    event_type: str
    trigger_context: str


def event_type_and_context(context: EventContext, trigger: TriggerConfig) -> EventClassification:
    phrase = trigger.trigger_phrase
    if context.event_name == "pull_request_review_comment":
        return EventClassification("REVIEW_COMMENT", f"PR review comment with '{phrase}'")
    if context.event_name == "pull_request_review":
        return EventClassification("PR_REVIEW", f"PR review with '{phrase}'")
    if context.event_name == "issue_comment":
        return EventClassification("GENERAL_COMMENT", f"issue comment with '{phrase}'")
    if context.event_name == "issues":
        if context.event_action == "assigned":
            return EventClassification(
                "ISSUE_ASSIGNED", f"issue assigned to '{context.assignee or ''}'"
            )
        if context.event_action == "labeled":
            return EventClassification("ISSUE_LABELED", f"issue labeled with '{context.label or ''}'")
        return EventClassification("ISSUE_CREATED", f"new issue with '{phrase}' in body")
    action = context.event_action or "updated"
    return EventClassification("PULL_REQUEST", f"pull request {action}")


def format_comments(comments: Sequence[ForgeComment]) -> str:
    return "\n\n".join(
        f"[{comment.user_login} at {comment.created_at}]: {comment.body}" for comment in comments
    )


def format_changed_files(files: Sequence[ChangedFile]) -> str:
    return "\n".join(
        f"- {item.path} ({item.status.upper()}) +{item.additions}/-{item.deletions}"
        for item in files
    )


def build_prompt_variables(
    *,
    context: EventContext,
    entity: EntityData,
    branch: BranchInfo,
    trigger: TriggerConfig,
    trigger_username: str,
) -> dict[str, str]:
    classification = event_type_and_context(context, trigger)
    comments = format_comments(entity.comments)
    number = str(entity.number)
    trigger_comment = context.comment_body or context.review_body or ""
    return {
        "REPOSITORY": context.repository.full_name,
        "PR_NUMBER": number if entity.is_pr else "",
        "ISSUE_NUMBER": number if not entity.is_pr else "",
        "PR_TITLE": entity.title if entity.is_pr else "",
        "ISSUE_TITLE": entity.title if not entity.is_pr else "",
        "PR_BODY": entity.body if entity.is_pr else "",
        "ISSUE_BODY": entity.body if not entity.is_pr else "",
        "PR_COMMENTS": comments if entity.is_pr else "",
        "ISSUE_COMMENTS": comments if not entity.is_pr else "",
        "REVIEW_COMMENTS": "",
        "CHANGED_FILES": format_changed_files(entity.changed_files),
        "TRIGGER_COMMENT": trigger_comment,
        "TRIGGER_USERNAME": trigger_username,
        "BRANCH_NAME": branch.claude_branch or branch.current_branch,
        "BASE_BRANCH": branch.base_branch,
        "EVENT_TYPE": classification.event_type,
        "IS_PR": "true" if entity.is_pr else "false",
    }


def substitute_prompt_variables(template: str, variables: Mapping[str, str]) -> str:
    """Expand ``$NAME`` references; unknown names are left untouched."""

    def _replace(match: re.Match[str]) -> str:
        return variables.get(match.group(1), match.group(0))

    return _VARIABLE_PATTERN.sub(_replace, template)


def render_prompt_document(
    *,
    variables: Mapping[str, str],
    context: EventContext,
    trigger: TriggerConfig,
    custom_instructions: str | None,
    agent_name: str,
) -> str:
    if trigger.override_prompt:
        return substitute_prompt_variables(trigger.override_prompt, variables)

    classification = event_type_and_context(context, trigger)
    is_pr = variables.get("IS_PR") == "true"
    number = variables["PR_NUMBER"] if is_pr else variables["ISSUE_NUMBER"]
    title = variables["PR_TITLE"] if is_pr else variables["ISSUE_TITLE"]
    body = variables["PR_BODY"] if is_pr else variables["ISSUE_BODY"]
    comments = variables["PR_COMMENTS"] if is_pr else variables["ISSUE_COMMENTS"]

    sections = [
        f"You are {agent_name}, an AI assistant working on repository {variables['REPOSITORY']}.",
        f"<formatted_context>\n{'PR' if is_pr else 'Issue'} #{number}: {title}\n</formatted_context>",
        f"<pr_or_issue_body>\n{body}\n</pr_or_issue_body>",
        f"<comments>\n{comments or 'No comments'}\n</comments>",
    ]
    if is_pr:
        sections.append(
            f"<changed_files>\n{variables['CHANGED_FILES'] or 'No files changed'}\n</changed_files>"
        )
    sections.append(
        f"""
<event_type>{classification.event_type}</event_type>
<is_pr>{variables['IS_PR']}</is_pr>
<trigger_context>{classification.trigger_context}</trigger_context>
<repository>{variables['REPOSITORY']}</repository>
<{'pr' if is_pr else 'issue'}_number>{number}</{'pr' if is_pr else 'issue'}_number>
<trigger_username>{variables['TRIGGER_USERNAME']}</trigger_username>
<branch_name>{variables['BRANCH_NAME']}</branch_name>
<base_branch>{variables['BASE_BRANCH']}</base_branch>
""".strip()
    )
    if variables["TRIGGER_COMMENT"]:
        sections.append(f"<trigger_comment>\n{variables['TRIGGER_COMMENT']}\n</trigger_comment>")
    if trigger.direct_prompt:
        sections.append(
            f"<direct_prompt>\nIMPORTANT: The following are direct instructions from the user "
            f"that MUST take precedence over all other instructions and context.\n\n"
            f"{trigger.direct_prompt}\n</direct_prompt>"
        )
    sections.append(
        f"""
Your task:
- Read the context above and work on the request in {variables['BRANCH_NAME']}.
- Keep the tracking comment updated with your progress using the comment tool.
- Commit changes with the local git tools; never rewrite history or force-push.
""".strip()
    )
    if custom_instructions:
        sections.append(f"Custom instructions:\n{custom_instructions}")
    return "\n\n".join(sections)


def write_prompt_file(runner_temp: Path, prompt: str) -> Path:
    prompt_dir = runner_temp / PROMPT_DIR_NAME
    prompt_dir.mkdir(parents=True, exist_ok=True)
    path = prompt_dir / PROMPT_FILE_NAME
    path.write_text(prompt, encoding="utf-8")
    log_event(LOGGER, "prompt_written", path=str(path), chars=len(prompt))
    return path
