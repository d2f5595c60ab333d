from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import cast

from forgepilot.config import ConfigError
from forgepilot.models import EntityType, EventContext, PullRequestState, Repository
from forgepilot.observability import log_event


LOGGER = logging.getLogger("forgepilot.events")

SUPPORTED_EVENTS: frozenset[str] = frozenset(
    {
        "issues",
        "issue_comment",
        "pull_request",
        "pull_request_target",
        "pull_request_review",
        "pull_request_review_comment",
    }
)


def load_event_payload(path: Path) -> dict[str, object]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read event payload from {path}: {exc}") from exc
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise ConfigError(f"Event payload in {path} must be a JSON object")
    return payload_obj


def parse_event_context(
    *,
    event_name: str,
    payload: dict[str, object],
    repository: Repository,
    actor: str,
    run_id: str,
) -> EventContext:
    if event_name not in SUPPORTED_EVENTS:
        raise ConfigError(f"Unsupported event type: {event_name}")

    action = _as_optional_str(payload.get("action"))
    sender = _as_object_dict(payload.get("sender"))
    actor_login = actor or _login(sender)

    issue = _as_object_dict(payload.get("issue"))
    pull_request = _as_object_dict(payload.get("pull_request"))
    comment = _as_object_dict(payload.get("comment"))
    review = _as_object_dict(payload.get("review"))

    entity: dict[str, object] | None
    entity_type: EntityType
    if event_name in {"issues", "issue_comment"}:
        entity = issue
        entity_type = "pr" if issue is not None and "pull_request" in issue else "issue"
    else:
        entity = pull_request
        entity_type = "pr"
    if entity is None:
        raise ConfigError(f"Event payload for {event_name} is missing the issue/pull_request")

    number = entity.get("number")
    if isinstance(number, bool) or not isinstance(number, int) or number < 1:
        raise ConfigError(f"Event payload for {event_name} is missing a valid entity number")

    comment_id: int | None = None
    if comment is not None:
        raw_id = comment.get("id")
        if isinstance(raw_id, int) and not isinstance(raw_id, bool):
            comment_id = raw_id

    label = _as_object_dict(payload.get("label"))
    assignee = _as_object_dict(payload.get("assignee"))

    context = EventContext(
        event_name=event_name,
        event_action=action,
        repository=repository,
        actor=actor_login,
        entity_type=entity_type,
        entity_number=number,
        entity_title=_as_string(entity.get("title")),
        entity_body=_as_string(entity.get("body")),
        entity_author=_login(_as_object_dict(entity.get("user"))),
        comment_body=_as_optional_str(comment.get("body")) if comment is not None else None,
        comment_id=comment_id,
        comment_author=(
            _login(_as_object_dict(comment.get("user"))) or None if comment is not None else None
        ),
        review_body=_as_optional_str(review.get("body")) if review is not None else None,
        review_author=(
            _login(_as_object_dict(review.get("user"))) or None if review is not None else None
        ),
        assignee=_login(assignee) or None,
        label=_as_optional_str(label.get("name")) if label is not None else None,
        pr_state=_pr_state(entity) if entity_type == "pr" else None,
        run_id=run_id,
    )
    log_event(
        LOGGER,
        "event_parsed",
        event_name=event_name,
        event_action=action,
        entity_type=entity_type,
        entity_number=number,
        actor=actor_login,
        has_comment=comment is not None,
    )
    return context


def _pr_state(entity: dict[str, object]) -> PullRequestState | None:
    if entity.get("merged") is True or entity.get("merged_at"):
        return "merged"
    state = _as_string(entity.get("state")).strip().lower()
    if state in {"open", "closed"}:
        return cast(PullRequestState, state)
    return None


def _login(user: dict[str, object] | None) -> str:
    if user is None:
        return ""
    login = user.get("login")
    if not isinstance(login, str):
        return ""
    return login.strip()


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


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)
