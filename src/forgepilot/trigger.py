from __future__ import annotations

from dataclasses import dataclass
import logging
import re

from forgepilot.config import TriggerConfig
from forgepilot.forge_gateway import ForgeApiError, ForgeGateway
from forgepilot.models import EventContext
from forgepilot.observability import log_event, log_warning_event
from forgepilot.provider import ProviderProfile


LOGGER = logging.getLogger("forgepilot.trigger")

_WRITE_PERMISSIONS = frozenset({"admin", "write"})


class TriggerPermissionError(RuntimeError):
    pass


@dataclass(frozen=True)
class TriggerDecision:
    should_activate: bool
    trigger_username: str
    comment_id: int | None = None
    review_comment: bool = False
    reason: str = ""

    @property
    def denied(self) -> bool:
        return not self.should_activate and self.reason.startswith("denied")


def contains_trigger_phrase(text: str | None, phrase: str) -> bool:
    """Return whether ``phrase`` occurs as a standalone word in ``text``.

    The phrase must start the text or follow whitespace, and must end the text
    or be followed by whitespace or one of ``.,!?;:``.
    """
    if not text or not phrase:
        return False
    pattern = rf"(^|\s){re.escape(phrase)}([\s.,!?;:]|$)"
    return re.search(pattern, text) is not None


def trigger_username_for(context: EventContext) -> str:
    if context.comment_author:
        return context.comment_author
    if context.review_author:
        return context.review_author
    if context.event_name == "issues" and context.entity_author:
        return context.entity_author
    return context.actor


def match_reason(context: EventContext, config: TriggerConfig) -> str | None:
    """Return why the event matches the trigger configuration, or ``None``."""
    if config.bypasses_phrase_match:
        return "direct_prompt" if config.direct_prompt else "override_prompt"

    phrase = config.trigger_phrase
    if context.event_name == "issues":
        if context.event_action == "assigned":
            wanted = (config.assignee_trigger or "").lstrip("@").strip()
            if wanted and (context.assignee or "").lstrip("@") == wanted:
                return "assignee"
            return None
        if context.event_action == "labeled":
            if config.label_trigger and context.label == config.label_trigger:
                return "label"
            return None
        if context.event_action in {"opened", "edited"}:
            if contains_trigger_phrase(context.entity_body, phrase):
                return "issue_body"
            if contains_trigger_phrase(context.entity_title, phrase):
                return "issue_title"
        return None

    if context.event_name in {"pull_request", "pull_request_target"}:
        if contains_trigger_phrase(context.entity_body, phrase):
            return "pr_body"
        if contains_trigger_phrase(context.entity_title, phrase):
            return "pr_title"
        return None

    if context.event_name == "pull_request_review":
        if contains_trigger_phrase(context.review_body, phrase):
            return "review_body"
        return None

    if context.is_comment_event:
        if contains_trigger_phrase(context.comment_body, phrase):
            return "comment_body"
    return None


class TriggerEvaluator:
    """Decides whether a forge event should start an agent job."""

    def __init__(self, gateway: ForgeGateway, profile: ProviderProfile) -> None:
        self._gateway = gateway
        self._profile = profile

    def evaluate(self, context: EventContext, config: TriggerConfig) -> TriggerDecision:
        username = trigger_username_for(context)
        reason = match_reason(context, config)
        if reason is None:
            return self._decide(context, username, False, "no_trigger")

        if not self.is_human_actor(context.actor):
            return self._decide(context, username, False, "non_human_actor")

        try:
            permitted = self.has_write_permission(context.actor)
        except TriggerPermissionError as exc:
            log_warning_event(
                LOGGER,
                "trigger_permission_lookup_failed",
                actor=context.actor,
                provider=self._profile.name,
                error=str(exc),
            )
            return self._decide(context, username, False, "denied_permission_lookup_failed")
        if not permitted:
            return self._decide(context, username, False, "denied_insufficient_permission")

        return self._decide(context, username, True, reason)

    def is_human_actor(self, actor: str) -> bool:
        if not self._profile.trusts_actor_lookup:
            log_event(
                LOGGER,
                "actor_check_skipped",
                actor=actor,
                provider=self._profile.name,
                assumed="human",
            )
            return True
        if actor.endswith("[bot]"):
            log_event(LOGGER, "actor_rejected", actor=actor, reason="bot_login")
            return False
        try:
            user_type = self._gateway.get_user_type(actor)
        except ForgeApiError as exc:
            log_warning_event(
                LOGGER,
                "actor_lookup_failed",
                actor=actor,
                assumed="human",
                error_type=type(exc).__name__,
            )
            return True
        if user_type != "User":
            log_event(LOGGER, "actor_rejected", actor=actor, reason="non_user_type", user_type=user_type)
            return False
        return True

    def has_write_permission(self, actor: str) -> bool:
        """Check the actor's repository permission.

        Raises ``TriggerPermissionError`` when the lookup fails on a forge whose
        permission endpoint is authoritative.
        """
        try:
            permission = self._gateway.get_collaborator_permission(actor)
        except ForgeApiError as exc:
            if self._profile.is_reduced:
                log_warning_event(
                    LOGGER,
                    "permission_lookup_failed",
                    actor=actor,
                    provider=self._profile.name,
                    assumed="permitted",
                    error_type=type(exc).__name__,
                )
                return True
            raise TriggerPermissionError(
                f"Failed to check permissions for {actor}: {exc}"
            ) from exc
        allowed = permission in _WRITE_PERMISSIONS
        log_event(LOGGER, "permission_checked", actor=actor, permission=permission, allowed=allowed)
        return allowed

    def _decide(
        self, context: EventContext, username: str, activate: bool, reason: str
    ) -> TriggerDecision:
        decision = TriggerDecision(
            should_activate=activate,
            trigger_username=username,
            comment_id=context.comment_id,
            review_comment=context.is_review_comment_event,
            reason=reason,
        )
        log_event(
            LOGGER,
            "trigger_evaluated",
            event_name=context.event_name,
            event_action=context.event_action,
            entity_number=context.entity_number,
            should_activate=activate,
            reason=reason,
            trigger_username=username,
        )
        return decision
