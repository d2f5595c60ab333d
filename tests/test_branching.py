from __future__ import annotations

from datetime import datetime, timedelta, timezone

from hypothesis import given, strategies as st
import pytest

from forge_fakes import FakeGateway, FakeGit
from forgepilot.branching import (
    BranchCheck,
    BranchLifecycleManager,
    BranchOperationError,
    BranchState,
    ClassificationContext,
    CleanupStrategy,
    branch_name_for,
    classify_branch,
)
from forgepilot.config import BranchConfig
from forgepilot.forge_gateway import ForgeApiError
from forgepilot.models import EntityData, PullRequestSnapshot
from forgepilot.observability import configure_logging
from forgepilot.provider import GITEA_PROFILE, GITHUB_PROFILE, ProviderProfile


FIXED_NOW = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)


def _issue(number: int = 123) -> EntityData:
    return EntityData(
        entity_type="issue", number=number, title="t", body="@claude fix", author_login="bob", comments=()
    )


def _pr(number: int, state: str, head: str = "feature-x", base: str = "main") -> EntityData:
    snapshot = PullRequestSnapshot(
        number=number,
        title="t",
        body="b",
        author_login="bob",
        state=state,  # type: ignore[arg-type]
        head_ref=head,
        head_sha="abc",
        base_ref=base,
        html_url="",
    )
    return EntityData(
        entity_type="pr",
        number=number,
        title="t",
        body="b",
        author_login="bob",
        comments=(),
        pull_request=snapshot,
    )


def _manager(
    profile: ProviderProfile = GITEA_PROFILE,
    config: BranchConfig | None = None,
) -> tuple[BranchLifecycleManager, FakeGateway, FakeGit]:
    gateway = FakeGateway()
    git = FakeGit()
    manager = BranchLifecycleManager(
        gateway=gateway,
        git=git,
        profile=profile,
        config=config or BranchConfig(),
        clock=lambda: FIXED_NOW,
    )
    return manager, gateway, git


def test_issue_on_reduced_forge_creates_new_branch_from_default() -> None:
    manager, _, git = _manager(GITEA_PROFILE)

    info = manager.setup_branch(_issue(123))

    assert info.base_branch == "main"
    assert info.claude_branch == "claude/issue-123-20240506_070809"
    assert info.current_branch == info.claude_branch
    assert manager.state is BranchState.CREATING_NEW_BRANCH
    assert git.ops == [
        ("fetch", "main"),
        ("checkout", "main"),
        ("pull", "main"),
        ("create_branch", "claude/issue-123-20240506_070809"),
    ]


def test_open_pull_request_checks_out_head_without_new_branch() -> None:
    manager, gateway, git = _manager(GITHUB_PROFILE)

    info = manager.setup_branch(_pr(7, "open"))

    assert info.base_branch == "main"
    assert info.claude_branch is None
    assert info.current_branch == "feature-x"
    assert manager.state is BranchState.ON_OPEN_PR_BRANCH
    assert git.ops == [("fetch_shallow", "feature-x", "20"), ("checkout", "feature-x")]
    assert gateway.calls == []


@pytest.mark.parametrize("state", ["closed", "merged"])
def test_closed_pull_request_gets_new_branch(state: str) -> None:
    manager, _, _ = _manager(GITHUB_PROFILE)

    info = manager.setup_branch(_pr(9, state))

    assert info.claude_branch == "claude/pr-9-20240506_070809"
    assert info.base_branch == "main"


def test_configured_base_branch_skips_repository_lookup() -> None:
    manager, gateway, git = _manager(config=BranchConfig(base_branch="develop", branch_prefix="bot/"))

    info = manager.setup_branch(_issue(5))

    assert info.base_branch == "develop"
    assert info.claude_branch == "bot/issue-5-20240506_070809"
    assert ("fetch", "develop") in git.ops
    assert not any(name == "get_repository" for name, _ in gateway.calls)


def test_base_strategy_stays_on_source_branch() -> None:
    manager, _, git = _manager(config=BranchConfig(strategy="base"))

    info = manager.setup_branch(_issue(5))

    assert info.claude_branch is None
    assert info.current_branch == "main"
    assert manager.state is BranchState.ON_BASE_BRANCH
    assert not any(op[0] == "create_branch" for op in git.ops)


def test_git_failure_during_setup_is_fatal() -> None:
    manager, _, git = _manager()
    git.fail_on.add("fetch")

    with pytest.raises(BranchOperationError, match="issue #123"):
        manager.setup_branch(_issue(123))
    assert manager.state is BranchState.UNDETERMINED


def test_repository_lookup_failure_is_fatal() -> None:
    manager, gateway, _ = _manager()
    gateway.fail["get_repository"] = ForgeApiError("down", status=502)

    with pytest.raises(BranchOperationError):
        manager.setup_branch(_issue(1))


def test_unexpected_current_branch_is_fatal(monkeypatch: pytest.MonkeyPatch) -> None:
    manager, _, git = _manager()
    monkeypatch.setattr(git, "current_branch", lambda: "main")

    with pytest.raises(BranchOperationError, match="Expected to be on branch"):
        manager.setup_branch(_issue(1))


@given(
    st.sampled_from(["issue", "pr"]),
    st.integers(min_value=1, max_value=10**6),
    st.integers(min_value=1, max_value=10**6),
    st.datetimes(
        min_value=datetime(2000, 1, 1), max_value=datetime(2099, 1, 1), timezones=st.just(timezone.utc)
    ),
)
def test_branch_names_are_pure_and_distinct_per_entity(
    entity_type: str, first: int, second: int, when: datetime
) -> None:
    name = branch_name_for(entity_type, first, when)  # type: ignore[arg-type]
    assert name == branch_name_for(entity_type, first, when)  # type: ignore[arg-type]
    assert name.startswith(f"claude/{entity_type}-{first}-")
    if first != second:
        assert name != branch_name_for(entity_type, second, when)  # type: ignore[arg-type]


def test_branch_name_uses_utc_seconds() -> None:
    local = datetime(2024, 5, 6, 9, 8, 9, tzinfo=timezone(timedelta(hours=2)))
    assert branch_name_for("issue", 1, local) == "claude/issue-1-20240506_070809"


@given(st.sampled_from(["aaa", "bbb", "ccc"]), st.sampled_from(["aaa", "bbb", "ccc"]), st.booleans())
def test_sha_classification_is_empty_iff_equal(branch_sha: str, base_sha: str, reduced: bool) -> None:
    profile = GITEA_PROFILE if reduced else GITHUB_PROFILE
    manager, gateway, git = _manager(profile)
    branch = "claude/issue-1-20240506_070809"
    if reduced:
        git.local_shas.update({branch: branch_sha, "main": base_sha})
    else:
        gateway.branch_shas.update({branch: branch_sha, "main": base_sha})

    result = manager.classify(base_branch="main", branch=branch)

    expected = BranchCheck.EMPTY if branch_sha == base_sha else BranchCheck.HAS_CHANGES
    assert result is expected
    assert not any("delete" in name for name, _ in gateway.calls)
    assert not any("delete" in op[0] for op in git.ops)


def test_compare_api_is_used_when_supported() -> None:
    manager, gateway, _ = _manager(GITHUB_PROFILE)
    gateway.compare_counts[("main", "b")] = 0
    assert manager.classify(base_branch="main", branch="b") is BranchCheck.EMPTY

    gateway.compare_counts[("main", "b")] = 3
    assert manager.classify(base_branch="main", branch="b") is BranchCheck.HAS_CHANGES
    assert not any(name == "get_branch_sha" for name, _ in gateway.calls)


def test_compare_api_is_not_called_on_reduced_forge() -> None:
    manager, gateway, git = _manager(GITEA_PROFILE)
    git.local_shas.update({"b": "x", "main": "x"})

    assert manager.classify(base_branch="main", branch="b") is BranchCheck.EMPTY
    assert not any(name == "compare_branches" for name, _ in gateway.calls)
    assert ("fetch_shallow", "b", "1") in git.ops


def test_branch_never_pushed_is_empty() -> None:
    manager, gateway, _ = _manager(GITHUB_PROFILE)
    gateway.branch_shas["main"] = "base"

    assert manager.classify(base_branch="main", branch="claude/pr-9-x") is BranchCheck.EMPTY


def test_all_inconclusive_defaults_to_has_changes(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    manager, gateway, _ = _manager(GITHUB_PROFILE)
    gateway.fail["compare_branches"] = ForgeApiError("boom", status=500)
    gateway.fail["get_branch_sha"] = ForgeApiError("boom", status=500)

    assert manager.classify(base_branch="main", branch="b") is BranchCheck.HAS_CHANGES
    assert "event=branch_check_defaulted" in capsys.readouterr().err


def test_local_lookup_failure_falls_back_to_existence_check() -> None:
    manager, gateway, git = _manager(GITEA_PROFILE)
    git.fail_on.add("fetch_shallow")
    gateway.branch_shas["b"] = "tip"

    assert manager.classify(base_branch="main", branch="b") is BranchCheck.HAS_CHANGES


def test_custom_strategy_list_runs_in_order() -> None:
    seen: list[str] = []

    def make(name: str, result: BranchCheck) -> CleanupStrategy:
        def check(ctx: ClassificationContext) -> BranchCheck:
            _ = ctx
            seen.append(name)
            return result

        return CleanupStrategy(name, check)

    ctx = ClassificationContext(
        base_branch="main", branch="b", profile=GITHUB_PROFILE, gateway=FakeGateway(), git=FakeGit()
    )
    result = classify_branch(
        ctx,
        [
            make("first", BranchCheck.INCONCLUSIVE),
            make("second", BranchCheck.EMPTY),
            make("third", BranchCheck.HAS_CHANGES),
        ],
    )

    assert result is BranchCheck.EMPTY
    assert seen == ["first", "second"]


def test_publish_pending_changes_commits_and_pushes_new_branch() -> None:
    manager, _, git = _manager()
    info = manager.setup_branch(_issue(3))
    git.dirty = True

    assert manager.publish_pending_changes(info, message="msg") is True
    assert git.ops[-3:] == [("add_all",), ("commit", "msg"), ("push", info.claude_branch)]

    assert manager.publish_pending_changes(info, message="msg") is False


def test_publish_pending_changes_skips_existing_branches() -> None:
    manager, _, git = _manager(GITHUB_PROFILE)
    info = manager.setup_branch(_pr(7, "open"))
    git.dirty = True

    assert manager.publish_pending_changes(info, message="msg") is False
    assert not any(op[0] == "push" for op in git.ops)


def test_publish_failure_raises_branch_error() -> None:
    manager, _, git = _manager()
    info = manager.setup_branch(_issue(3))
    git.dirty = True
    git.fail_on.add("push")

    with pytest.raises(BranchOperationError, match="Failed to push"):
        manager.publish_pending_changes(info, message="msg")
