"""Working-branch setup and end-of-job branch classification.

Setup picks one of three outcomes for a job: check out the head of an open
pull request, create a fresh branch off the source branch, or stay on the
source branch. Branch creation always goes through the local checkout so the
same code path serves both forge variants.

Classification runs after the agent and decides whether a newly created
branch carries any commits. It is an ordered list of strategies, each of which
may answer definitively or pass. When every strategy passes, the branch is
treated as having changes so that links to possible work are never hidden.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import logging

from forgepilot.config import BranchConfig
from forgepilot.forge_gateway import ForgeApiError, ForgeGateway, ForgeNotFoundError
from forgepilot.git_ops import LocalGit
from forgepilot.models import BranchInfo, EntityData, EntityType
from forgepilot.observability import log_event, log_warning_event
from forgepilot.provider import ProviderProfile
from forgepilot.shell import CommandError


LOGGER = logging.getLogger("forgepilot.branching")

OPEN_PR_FETCH_DEPTH = 20


class BranchOperationError(RuntimeError):
    pass


class BranchState(Enum):
    UNDETERMINED = "undetermined"
    ON_OPEN_PR_BRANCH = "on_open_pr_branch"
    CREATING_NEW_BRANCH = "creating_new_branch"
    ON_BASE_BRANCH = "on_base_branch"


class BranchCheck(Enum):
    HAS_CHANGES = "has_changes"
    EMPTY = "empty"
    INCONCLUSIVE = "inconclusive"


def branch_name_for(
    entity_type: EntityType,
    number: int,
    timestamp: datetime,
    *,
    prefix: str = "claude/",
) -> str:
    utc = timestamp.astimezone(timezone.utc) if timestamp.tzinfo else timestamp
    return f"{prefix}{entity_type}-{number}-{utc.strftime('%Y%m%d_%H%M%S')}"


@dataclass(frozen=True)
class BranchSetup:
    state: BranchState
    info: BranchInfo


@dataclass(frozen=True)
class ClassificationContext:
    base_branch: str
    branch: str
    profile: ProviderProfile
    gateway: ForgeGateway
    git: LocalGit


@dataclass(frozen=True)
class CleanupStrategy:
    name: str
    check: Callable[[ClassificationContext], BranchCheck]


def _compare_api_check(ctx: ClassificationContext) -> BranchCheck:
    if not ctx.profile.supports_compare_api:
        return BranchCheck.INCONCLUSIVE
    try:
        commits = ctx.gateway.compare_branches(ctx.base_branch, ctx.branch)
    except ForgeApiError as exc:
        log_event(
            LOGGER,
            "branch_check_inconclusive",
            strategy="compare_api",
            branch=ctx.branch,
            error_type=type(exc).__name__,
        )
        return BranchCheck.INCONCLUSIVE
    return BranchCheck.EMPTY if commits == 0 else BranchCheck.HAS_CHANGES


def _tip_sha(ctx: ClassificationContext, branch: str) -> str:
    if ctx.profile.prefers_local_git_lookup:
        ctx.git.fetch_shallow(branch, depth=1)
        sha = ctx.git.branch_sha(branch)
        if sha is None:
            raise ForgeNotFoundError(f"Branch {branch} not found in the local checkout", status=404)
        return sha
    return ctx.gateway.get_branch_sha(branch)


def _sha_equality_check(ctx: ClassificationContext) -> BranchCheck:
    try:
        branch_sha = _tip_sha(ctx, ctx.branch)
        base_sha = _tip_sha(ctx, ctx.base_branch)
    except (ForgeApiError, CommandError) as exc:
        log_event(
            LOGGER,
            "branch_check_inconclusive",
            strategy="sha_equality",
            branch=ctx.branch,
            error_type=type(exc).__name__,
        )
        return BranchCheck.INCONCLUSIVE
    return BranchCheck.EMPTY if branch_sha == base_sha else BranchCheck.HAS_CHANGES


def _branch_existence_check(ctx: ClassificationContext) -> BranchCheck:
    try:
        ctx.gateway.get_branch_sha(ctx.branch)
    except ForgeNotFoundError:
        log_event(LOGGER, "branch_never_created", branch=ctx.branch)
        return BranchCheck.EMPTY
    except ForgeApiError as exc:
        log_event(
            LOGGER,
            "branch_check_inconclusive",
            strategy="branch_existence",
            branch=ctx.branch,
            error_type=type(exc).__name__,
        )
    return BranchCheck.INCONCLUSIVE


DEFAULT_CLEANUP_STRATEGIES: tuple[CleanupStrategy, ...] = (
    CleanupStrategy("compare_api", _compare_api_check),
    CleanupStrategy("sha_equality", _sha_equality_check),
    CleanupStrategy("branch_existence", _branch_existence_check),
)


def classify_branch(
    ctx: ClassificationContext,
    strategies: Sequence[CleanupStrategy] = DEFAULT_CLEANUP_STRATEGIES,
) -> BranchCheck:
    """Run ``strategies`` in order; inconclusive overall means the branch has changes."""
    for strategy in strategies:
        result = strategy.check(ctx)
        if result is not BranchCheck.INCONCLUSIVE:
            _log_classified(ctx, result, strategy.name)
            return result
    log_warning_event(
        LOGGER,
        "branch_check_defaulted",
        branch=ctx.branch,
        assumed=BranchCheck.HAS_CHANGES.value,
    )
    _log_classified(ctx, BranchCheck.HAS_CHANGES, "default")
    return BranchCheck.HAS_CHANGES


def _log_classified(ctx: ClassificationContext, result: BranchCheck, strategy: str) -> None:
    log_event(
        LOGGER,
        "branch_classified",
        branch=ctx.branch,
        base_branch=ctx.base_branch,
        result=result.value,
        strategy=strategy,
    )
    if result is BranchCheck.EMPTY:
        # Empty branches are reported only; nothing is deleted on either forge.
        log_event(
            LOGGER,
            "branch_deletion_skipped",
            branch=ctx.branch,
            forge_supports_delete=ctx.profile.supports_branch_delete,
        )


class BranchLifecycleManager:
    def __init__(
        self,
        *,
        gateway: ForgeGateway,
        git: LocalGit,
        profile: ProviderProfile,
        config: BranchConfig,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._gateway = gateway
        self._git = git
        self._profile = profile
        self._config = config
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.state = BranchState.UNDETERMINED

    def setup_branch(self, entity: EntityData) -> BranchInfo:
        try:
            setup = self._setup(entity)
        except (CommandError, ForgeApiError) as exc:
            log_warning_event(
                LOGGER,
                "branch_setup_failed",
                entity_type=entity.entity_type,
                entity_number=entity.number,
                error_type=type(exc).__name__,
            )
            raise BranchOperationError(
                f"Failed to set up a working branch for {entity.entity_type} #{entity.number}: {exc}"
            ) from exc
        self.state = setup.state
        return setup.info

    def _setup(self, entity: EntityData) -> BranchSetup:
        pull_request = entity.pull_request
        if entity.is_pr and pull_request is not None and pull_request.is_open:
            head = pull_request.head_ref
            self._git.fetch_shallow(head, depth=OPEN_PR_FETCH_DEPTH)
            self._git.checkout(head)
            log_event(
                LOGGER,
                "branch_pr_checked_out",
                pr_number=entity.number,
                head_ref=head,
                base_ref=pull_request.base_ref,
            )
            return BranchSetup(
                state=BranchState.ON_OPEN_PR_BRANCH,
                info=BranchInfo(
                    base_branch=pull_request.base_ref,
                    claude_branch=None,
                    current_branch=head,
                ),
            )

        source = self._config.base_branch or self._gateway.get_repository().default_branch
        self._git.fetch(source)
        self._git.checkout(source)
        self._git.pull(source)

        if self._config.strategy == "base":
            self._verify_current(source)
            log_event(LOGGER, "branch_base_checked_out", branch=source)
            return BranchSetup(
                state=BranchState.ON_BASE_BRANCH,
                info=BranchInfo(base_branch=source, claude_branch=None, current_branch=source),
            )

        name = branch_name_for(
            entity.entity_type, entity.number, self._clock(), prefix=self._config.branch_prefix
        )
        self._git.create_branch(name)
        self._verify_current(name)
        log_event(
            LOGGER,
            "branch_created",
            branch=name,
            source_branch=source,
            entity_type=entity.entity_type,
            entity_number=entity.number,
        )
        return BranchSetup(
            state=BranchState.CREATING_NEW_BRANCH,
            info=BranchInfo(base_branch=source, claude_branch=name, current_branch=name),
        )

    def _verify_current(self, expected: str) -> None:
        current = self._git.current_branch()
        if current != expected:
            raise BranchOperationError(
                f"Expected to be on branch {expected} but the checkout is on {current or '<detached>'}"
            )

    def publish_pending_changes(self, info: BranchInfo, *, message: str) -> bool:
        """Commit and push anything the agent left uncommitted on the new branch.

        Only the job's own branch is ever pushed, and never with force.
        """
        branch = info.claude_branch
        if branch is None:
            return False
        try:
            self._git.add_all()
            if not self._git.has_staged_changes():
                return False
            self._git.commit(message)
            self._git.push(branch)
        except CommandError as exc:
            raise BranchOperationError(f"Failed to push pending changes to {branch}: {exc}") from exc
        log_event(LOGGER, "branch_pending_changes_pushed", branch=branch)
        return True

    def classify(
        self,
        *,
        base_branch: str,
        branch: str,
        strategies: Sequence[CleanupStrategy] = DEFAULT_CLEANUP_STRATEGIES,
    ) -> BranchCheck:
        ctx = ClassificationContext(
            base_branch=base_branch,
            branch=branch,
            profile=self._profile,
            gateway=self._gateway,
            git=self._git,
        )
        return classify_branch(ctx, strategies)
