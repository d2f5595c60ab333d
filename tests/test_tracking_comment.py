from __future__ import annotations

from hypothesis import given, strategies as st
import pytest

from forge_fakes import FakeGateway
from forgepilot.forge_gateway import ForgeApiError
from forgepilot.models import CommentPhase, ExecutionResult
from forgepilot.provider import GITEA_PROFILE, GITHUB_PROFILE, ForgeLinks
from forgepilot.tracking_comment import (
    SPINNER_HTML,
    CommentOperationError,
    FinalOutcome,
    TrackingCommentProtocol,
    extract_agent_content,
    format_duration,
    phase_of_body,
    render_created_body,
    render_final_body,
)


GITHUB_LINKS = ForgeLinks("https://github.com", "o", "r", GITHUB_PROFILE)
GITEA_LINKS = ForgeLinks("https://gitea.local", "o", "r", GITEA_PROFILE)


def _protocol(links: ForgeLinks = GITHUB_LINKS) -> tuple[TrackingCommentProtocol, FakeGateway]:
    gateway = FakeGateway()
    return TrackingCommentProtocol(gateway, links, agent_name="Claude"), gateway


def _outcome(**overrides: object) -> FinalOutcome:
    values: dict[str, object] = {
        "success": True,
        "trigger_username": "alice",
        "entity_type": "issue",
        "entity_number": 12,
        "run_id": "555",
        "base_branch": "main",
        "claude_branch": "claude/issue-12-20240101_000000",
        "branch_has_changes": True,
        "result": ExecutionResult(success=True, cost_usd=0.1234, duration_ms=65_000),
    }
    values.update(overrides)
    return FinalOutcome(**values)  # type: ignore[arg-type]


def test_create_posts_working_body_on_issue_endpoint() -> None:
    protocol, gateway = _protocol()

    comment = protocol.create(entity_number=12, run_id="555")

    assert comment.phase is CommentPhase.CREATED
    assert comment.target == "issue"
    body = gateway.body_of(comment.comment_id)
    assert body == comment.current_body
    assert body.startswith(f"Claude is working… {SPINNER_HTML}")
    assert "I'll analyze this and get back to you." in body
    assert body.count("[View job run](https://github.com/o/r/actions/runs/555)") == 1


def test_create_replies_in_review_thread() -> None:
    protocol, gateway = _protocol()

    comment = protocol.create(entity_number=7, run_id="1", review_comment_id=99)

    assert comment.target == "review"
    assert ("create_review_comment_reply", (7, 99)) in gateway.calls
    assert not any(name == "create_issue_comment" for name, _ in gateway.calls)


def test_create_falls_back_once_to_issue_endpoint() -> None:
    protocol, gateway = _protocol()
    gateway.fail["create_review_comment_reply"] = ForgeApiError("nope", status=422)

    comment = protocol.create(entity_number=7, run_id="1", review_comment_id=99)

    assert comment.target == "issue"
    assert [name for name, _ in gateway.calls] == ["create_review_comment_reply", "create_issue_comment"]


def test_create_fails_when_fallback_fails() -> None:
    protocol, gateway = _protocol()
    gateway.fail["create_issue_comment"] = ForgeApiError("nope", status=500)

    with pytest.raises(CommentOperationError, match="tracking comment on #3"):
        protocol.create(entity_number=3, run_id="1")
    assert [name for name, _ in gateway.calls] == ["create_issue_comment", "create_issue_comment"]


def test_link_branch_uses_forge_url_shape_and_stays_unique() -> None:
    protocol, gateway = _protocol(GITEA_LINKS)
    comment = protocol.create(entity_number=1, run_id="2")

    linked = protocol.link_branch(comment, "claude/issue-1-x")
    relinked = protocol.link_branch(linked, "claude/issue-1-x")

    body = gateway.body_of(comment.comment_id)
    assert relinked.phase is CommentPhase.BRANCH_LINKED
    assert body.count("[View branch](https://gitea.local/o/r/src/branch/claude/issue-1-x/)") == 1
    assert body.count("[View job run](") == 1


def test_mark_working_does_not_write() -> None:
    protocol, gateway = _protocol()
    comment = protocol.create(entity_number=1, run_id="2")
    calls_before = len(gateway.calls)

    working = protocol.mark_working(comment)

    assert working.phase is CommentPhase.WORKING
    assert len(gateway.calls) == calls_before


def test_finalize_success_with_changes_includes_all_links() -> None:
    protocol, gateway = _protocol()
    comment = protocol.create(entity_number=12, run_id="555")
    comment = protocol.link_branch(comment, "claude/issue-12-20240101_000000")

    final = protocol.finalize(protocol.mark_working(comment), _outcome())

    body = gateway.body_of(final.comment_id)
    assert final.phase is CommentPhase.FINAL
    assert body.startswith("**Claude finished @alice's task in 1m 5s**\nCost: $0.1234")
    assert SPINNER_HTML not in body
    assert "I'll analyze this" not in body
    lines = body.splitlines()
    assert lines[-3].startswith("[Create a PR](https://github.com/o/r/compare/main...claude/issue-12-20240101_000000?quick_pull=1")
    assert "Issue%20%2312%3A%20Changes%20from%20Claude" in lines[-3]
    assert lines[-2] == "[View job run](https://github.com/o/r/actions/runs/555)"
    assert lines[-1] == "[View branch](https://github.com/o/r/tree/claude/issue-12-20240101_000000)"


def test_closed_pr_without_commits_omits_branch_links() -> None:
    protocol, gateway = _protocol()
    comment = protocol.create(entity_number=9, run_id="555")
    comment = protocol.link_branch(comment, "claude/pr-9-20240101_000000")

    final = protocol.finalize(
        comment,
        _outcome(entity_type="pr", entity_number=9, claude_branch="claude/pr-9-20240101_000000", branch_has_changes=False),
    )

    body = gateway.body_of(final.comment_id)
    assert "[View branch](" not in body
    assert "[Create a PR](" not in body
    assert body.count("[View job run](https://github.com/o/r/actions/runs/555)") == 1


def test_finalize_failure_renders_error_block() -> None:
    body = render_final_body(
        render_created_body("Claude", "https://x/run"),
        _outcome(success=False, result=ExecutionResult(success=False, duration_ms=3_000, error="agent crashed")),
        agent_name="Claude",
        links=GITHUB_LINKS,
    )

    assert body.startswith("**Claude encountered an error after 3s**")
    assert "```\nagent crashed\n```" in body
    assert "[Create a PR](" in body


def test_finalize_without_metrics_omits_duration_and_cost() -> None:
    body = render_final_body("", _outcome(result=None), agent_name="Claude", links=GITHUB_LINKS)
    assert body.startswith("**Claude finished @alice's task**\n\n---")
    assert "Cost:" not in body


def test_agent_content_is_preserved_between_separators() -> None:
    working = render_created_body("Claude", "https://x/run")
    agent_body = "### Plan\n- [x] read code\n- [ ] write tests\n\n---\n\nnotes"
    body = render_final_body(
        f"{agent_body}\n\n[View job run](https://x/run)", _outcome(), agent_name="Claude", links=GITHUB_LINKS
    )

    assert agent_body in body
    assert extract_agent_content(working, "Claude") == ""


def test_protocol_links_inside_agent_lines_are_not_duplicated() -> None:
    agent_text = (
        "- [x] done, see logs: [View job run](https://github.com/o/r/actions/runs/555)\n"
        "pushed to [View branch](https://github.com/o/r/tree/old) and [Create a PR](https://x/compare)"
    )
    start = render_created_body("Claude", "https://github.com/o/r/actions/runs/555") + "\n" + agent_text

    body = render_final_body(start, _outcome(), agent_name="Claude", links=GITHUB_LINKS)

    assert body.count("[View job run](") == 1
    assert body.count("[View branch](") == 1
    assert body.count("[Create a PR](") == 1
    assert "- [x] done, see logs:\npushed to  and\n" in body


def test_error_details_written_by_agent_survive_a_retry() -> None:
    start = "notes\n<details><summary>Error details</summary>\nmore"
    outcome = _outcome(success=False, error="boom\n<details><summary>Error details</summary>")

    once = render_final_body(start, outcome, agent_name="Claude", links=GITHUB_LINKS)
    twice = render_final_body(once, outcome, agent_name="Claude", links=GITHUB_LINKS)

    assert once == twice
    assert "notes\n<details><summary>Error details</summary>\nmore" in once
    assert once.count("```\nboom\n&lt;details><summary>Error details</summary>\n```") == 1


_AGENT_FRAGMENTS = st.sampled_from(
    [
        "<details><summary>Error details</summary>",
        "</details>",
        "---",
        "",
        "see [View job run](https://x/run) here",
        "[View branch](https://x/b)",
        "I'll analyze this and get back to you.",
        "- [x] step",
    ]
)


@given(
    st.one_of(
        st.text(alphabet=st.characters(blacklist_categories=("Cs",)), max_size=200),
        st.lists(_AGENT_FRAGMENTS, max_size=8).map("\n".join),
    ),
    st.booleans(),
    st.booleans(),
    st.one_of(st.none(), st.text(min_size=1, max_size=40).filter(lambda s: s.strip() != "")),
)
def test_final_rendering_is_idempotent(
    agent_text: str, success: bool, has_changes: bool, error: str | None
) -> None:
    start = render_created_body("Claude", "https://github.com/o/r/actions/runs/555") + "\n" + agent_text
    outcome = _outcome(success=success, branch_has_changes=has_changes, error=error)

    once = render_final_body(start, outcome, agent_name="Claude", links=GITHUB_LINKS)
    twice = render_final_body(once, outcome, agent_name="Claude", links=GITHUB_LINKS)

    assert once == twice
    assert once.count("[View job run](") == 1
    assert once.count("[View branch](") <= 1
    assert once.count("[Create a PR](") <= 1


def test_finalize_targets_review_endpoint_after_reload() -> None:
    protocol, gateway = _protocol()
    created = protocol.create(entity_number=7, run_id="1", review_comment_id=5)

    loaded = protocol.load(created.comment_id, target="review")
    protocol.finalize(loaded, _outcome(claude_branch=None))

    assert ("update_comment", (created.comment_id, "review")) in gateway.calls
    assert gateway.body_of(created.comment_id).startswith("**Claude finished")


def test_update_failure_is_fatal() -> None:
    protocol, gateway = _protocol()
    comment = protocol.create(entity_number=1, run_id="1")
    gateway.fail["update_comment"] = ForgeApiError("gone", status=500)

    with pytest.raises(CommentOperationError, match="Failed to update tracking comment"):
        protocol.finalize(comment, _outcome())


def test_load_failure_is_fatal() -> None:
    protocol, gateway = _protocol()
    gateway.fail["get_comment"] = ForgeApiError("gone", status=500)

    with pytest.raises(CommentOperationError, match="Failed to read tracking comment"):
        protocol.load(1, target="issue")


def test_phase_is_derived_from_body() -> None:
    working = render_created_body("Claude", "u")
    assert phase_of_body(working, "Claude") is CommentPhase.WORKING
    assert phase_of_body(working + "\n[View branch](b)", "Claude") is CommentPhase.BRANCH_LINKED
    final = render_final_body(working, _outcome(), agent_name="Claude", links=GITHUB_LINKS)
    assert phase_of_body(final, "Claude") is CommentPhase.FINAL


def test_final_comment_cannot_go_back_to_branch_linked() -> None:
    protocol, _ = _protocol()
    comment = protocol.create(entity_number=1, run_id="1")
    final = protocol.finalize(comment, _outcome())

    with pytest.raises(ValueError, match="Illegal tracking comment transition"):
        protocol.link_branch(final, "b")
    assert protocol.finalize(final, _outcome()).current_body == final.current_body


@pytest.mark.parametrize(
    ("duration_ms", "expected"), [(0, "0s"), (59_999, "59s"), (60_000, "1m 0s"), (3_725_000, "62m 5s")]
)
def test_format_duration(duration_ms: int, expected: str) -> None:
    assert format_duration(duration_ms) == expected
