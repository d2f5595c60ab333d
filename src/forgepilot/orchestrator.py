from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
import logging
from pathlib import Path

from forgepilot.agent_adapter import AgentExecutor, AgentRequest, load_execution_file
from forgepilot.branching import BranchCheck, BranchLifecycleManager, BranchOperationError
from forgepilot.config import AppConfig, FinalizeInputs
from forgepilot.forge_gateway import ForgeApiError, ForgeGateway
from forgepilot.git_ops import LocalGit
from forgepilot.models import (
    BranchInfo,
    EntityData,
    EventContext,
    ExecutionResult,
    ToolCapabilitySet,
    TrackingComment,
)
from forgepilot.observability import log_event, log_warning_event, mask_secrets
from forgepilot.prompts import build_prompt_variables, render_prompt_document, write_prompt_file
from forgepilot.provider import ForgeLinks
from forgepilot.shell import CommandError
from forgepilot.step_outputs import StepOutputs
from forgepilot.tool_servers import build_tool_server_config, write_tool_server_config
from forgepilot.tools import DEFAULT_TOOL_POLICY, ToolFlags, ToolPolicy, build_tools, comment_tool_for
from forgepilot.tracking_comment import FinalOutcome, TrackingCommentProtocol
from forgepilot.trigger import TriggerDecision, TriggerEvaluator


LOGGER = logging.getLogger("forgepilot.orchestrator")

_PREPARE_ERRORS = (BranchOperationError, ForgeApiError, CommandError, OSError)


@dataclass(frozen=True)
class PreparedJob:
    context: EventContext
    decision: TriggerDecision
    comment: TrackingComment | None = None
    entity: EntityData | None = None
    branch: BranchInfo | None = None
    tools: ToolCapabilitySet | None = None
    tool_server_config_path: Path | None = None
    prompt: str | None = None
    prompt_path: Path | None = None

    @property
    def activated(self) -> bool:
        return self.decision.should_activate


@dataclass(frozen=True)
class JobReport:
    prepared: PreparedJob
    result: ExecutionResult | None = None
    final_comment: TrackingComment | None = None

    @property
    def succeeded(self) -> bool:
        if not self.prepared.activated:
            return not self.prepared.decision.denied
        return self.result is not None and self.result.success


class JobPreparationError(RuntimeError):
    """Preparation failed after the tracking comment was posted."""

    def __init__(self, message: str, *, comment: TrackingComment | None) -> None:
        super().__init__(message)
        self.comment = comment


def fetch_entity(gateway: ForgeGateway, context: EventContext) -> EntityData:
    number = context.entity_number
    comments = tuple(gateway.list_issue_comments(number))
    if context.is_pr:
        pull_request = gateway.get_pull_request(number)
        files = tuple(gateway.list_pull_request_files(number))
        return EntityData(
            entity_type="pr",
            number=number,
            title=pull_request.title,
            body=pull_request.body,
            author_login=pull_request.author_login,
            comments=comments,
            pull_request=pull_request,
            changed_files=files,
        )
    issue = gateway.get_issue(number)
    return EntityData(
        entity_type="issue",
        number=number,
        title=issue.title,
        body=issue.body,
        author_login=issue.author_login,
        comments=comments,
    )


class JobPipeline:
    """One sequential agent job: prepare, execute, finalize."""

    def __init__(
        self,
        config: AppConfig,
        *,
        gateway: ForgeGateway,
        git: LocalGit,
        executor: AgentExecutor | None = None,
        outputs: StepOutputs | None = None,
        tool_policy: ToolPolicy = DEFAULT_TOOL_POLICY,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._git = git
        self._executor = executor
        self._outputs = outputs or StepOutputs(None)
        self._tool_policy = tool_policy
        self._links = ForgeLinks(
            server_url=config.forge.server_url,
            owner=config.repository.owner,
            repo=config.repository.name,
            profile=config.profile,
        )
        self._trigger = TriggerEvaluator(gateway, config.profile)
        self._comments = TrackingCommentProtocol(gateway, self._links, agent_name=config.agent.name)
        self._branches = BranchLifecycleManager(
            gateway=gateway,
            git=git,
            profile=config.profile,
            config=config.branch,
            clock=clock,
        )

    @property
    def outputs(self) -> StepOutputs:
        return self._outputs

    def prepare(self, context: EventContext) -> PreparedJob:
        decision = self._trigger.evaluate(context, self._config.trigger)
        self._outputs.set("contains_trigger", decision.should_activate)
        prepared = PreparedJob(context=context, decision=decision)
        if not decision.should_activate:
            return prepared

        comment = self._comments.create(
            entity_number=context.entity_number,
            run_id=context.run_id,
            review_comment_id=decision.comment_id if decision.review_comment else None,
        )
        self._outputs.set("claude_comment_id", comment.comment_id)
        self._outputs.set("claude_comment_target", comment.target)
        self._outputs.set("TRIGGER_USERNAME", decision.trigger_username)

        try:
            entity = fetch_entity(self._gateway, context)
            branch = self._branches.setup_branch(entity)
            self._outputs.set_many(
                {
                    "BASE_BRANCH": branch.base_branch,
                    "CLAUDE_BRANCH": branch.claude_branch,
                    "CURRENT_BRANCH": branch.current_branch,
                }
            )
            if branch.claude_branch is not None:
                comment = self._comments.link_branch(comment, branch.claude_branch)

            tools = self._resolve_tools(entity, comment)
            server_config = build_tool_server_config(
                forge=self._config.forge,
                tools=self._config.tools,
                branch=branch.current_branch,
                base_branch=branch.base_branch,
                repo_dir=str(self._config.run.workspace),
            )
            server_config_path = write_tool_server_config(self._config.run.runner_temp, server_config)

            variables = build_prompt_variables(
                context=context,
                entity=entity,
                branch=branch,
                trigger=self._config.trigger,
                trigger_username=decision.trigger_username,
            )
            prompt = render_prompt_document(
                variables=variables,
                context=context,
                trigger=self._config.trigger,
                custom_instructions=self._config.agent.custom_instructions,
                agent_name=self._config.agent.name,
            )
            prompt_path = write_prompt_file(self._config.run.runner_temp, prompt)
        except _PREPARE_ERRORS as exc:
            log_warning_event(
                LOGGER,
                "job_prepare_failed",
                entity_number=context.entity_number,
                error_type=type(exc).__name__,
            )
            message = mask_secrets(str(exc))
            self._outputs.set("prepare_error", message)
            raise JobPreparationError(message, comment=comment) from exc

        self._outputs.set_many(
            {
                "allowed_tools": ",".join(tools.allowed),
                "disallowed_tools": ",".join(tools.disallowed),
                "mcp_config": server_config,
                "prompt_file": str(prompt_path),
            }
        )
        log_event(
            LOGGER,
            "job_prepared",
            entity_type=entity.entity_type,
            entity_number=entity.number,
            branch=branch.current_branch,
            comment_id=comment.comment_id,
        )
        return PreparedJob(
            context=context,
            decision=decision,
            comment=comment,
            entity=entity,
            branch=branch,
            tools=tools,
            tool_server_config_path=server_config_path,
            prompt=prompt,
            prompt_path=prompt_path,
        )

    def execute(self, prepared: PreparedJob) -> tuple[TrackingComment, ExecutionResult]:
        if (
            self._executor is None
            or prepared.comment is None
            or prepared.branch is None
            or prepared.tools is None
            or prepared.prompt is None
            or prepared.tool_server_config_path is None
        ):
            raise RuntimeError("Cannot execute a job that was not fully prepared")
        comment = self._comments.mark_working(prepared.comment)
        result = self._executor.execute(
            AgentRequest(
                prompt=prepared.prompt,
                tools=prepared.tools,
                tool_server_config_path=prepared.tool_server_config_path,
                cwd=self._config.run.workspace,
                env={
                    "CLAUDE_COMMENT_ID": str(comment.comment_id),
                    "CLAUDE_BRANCH": prepared.branch.claude_branch or "",
                    "BASE_BRANCH": prepared.branch.base_branch,
                },
            )
        )
        if result.success:
            result = self._publish(prepared, result)
        return comment, result

    def finalize(
        self,
        comment: TrackingComment,
        *,
        context: EventContext,
        base_branch: str,
        claude_branch: str | None,
        trigger_username: str | None,
        result: ExecutionResult | None,
        error: str | None = None,
    ) -> TrackingComment:
        has_changes = False
        if claude_branch is not None:
            check = self._branches.classify(base_branch=base_branch, branch=claude_branch)
            has_changes = check is BranchCheck.HAS_CHANGES
        outcome = FinalOutcome(
            success=error is None and result is not None and result.success,
            trigger_username=trigger_username,
            entity_type=context.entity_type,
            entity_number=context.entity_number,
            run_id=context.run_id,
            base_branch=base_branch,
            claude_branch=claude_branch,
            branch_has_changes=has_changes,
            result=result,
            error=error,
        )
        return self._comments.finalize(comment, outcome)

    def finalize_from_inputs(self, inputs: FinalizeInputs, context: EventContext) -> TrackingComment:
        """Finalize a comment created by an earlier ``prepare`` process."""
        comment = self._comments.load(inputs.comment_id, target=inputs.comment_target)
        if inputs.output_file is not None and inputs.output_file.exists():
            result = load_execution_file(inputs.output_file, succeeded=inputs.agent_succeeded)
        else:
            result = ExecutionResult(success=inputs.agent_succeeded)
        error = None
        if not inputs.prepare_succeeded:
            error = inputs.prepare_error or "Preparation failed"
        return self.finalize(
            comment,
            context=context,
            base_branch=inputs.base_branch,
            claude_branch=inputs.claude_branch,
            trigger_username=inputs.trigger_username,
            result=result,
            error=error,
        )

    def run(self, context: EventContext) -> JobReport:
        try:
            prepared = self.prepare(context)
        except JobPreparationError as exc:
            if exc.comment is not None:
                self.finalize(
                    exc.comment,
                    context=context,
                    base_branch=self._config.branch.base_branch or "",
                    claude_branch=None,
                    trigger_username=None,
                    result=None,
                    error=str(exc),
                )
            raise
        if not prepared.activated:
            return JobReport(prepared=prepared)

        comment, result = self.execute(prepared)
        branch = prepared.branch
        if branch is None:
            raise RuntimeError("Cannot finalize a job without an established branch")
        final_comment = self.finalize(
            comment,
            context=context,
            base_branch=branch.base_branch,
            claude_branch=branch.claude_branch,
            trigger_username=prepared.decision.trigger_username,
            result=result,
        )
        log_event(
            LOGGER,
            "job_finished",
            entity_number=context.entity_number,
            success=result.success,
            comment_id=final_comment.comment_id,
        )
        return JobReport(prepared=prepared, result=result, final_comment=final_comment)

    def _resolve_tools(self, entity: EntityData, comment: TrackingComment) -> ToolCapabilitySet:
        signing = self._config.tools.use_commit_signing
        if signing and not self._config.profile.supports_atomic_multi_commit:
            log_warning_event(
                LOGGER,
                "commit_signing_disabled",
                provider=self._config.profile.name,
                reason="no_atomic_multi_commit",
            )
            signing = False
        return build_tools(
            self._tool_policy,
            mode_additions=(comment_tool_for(review_comment=comment.target == "review"),),
            user_allowed=self._config.tools.allowed_tools,
            user_disallowed=self._config.tools.disallowed_tools,
            flags=ToolFlags(
                read_ci=self._config.tools.read_ci,
                is_pr=entity.is_pr,
                use_commit_signing=signing,
            ),
        )

    def _publish(self, prepared: PreparedJob, result: ExecutionResult) -> ExecutionResult:
        branch = prepared.branch
        if branch is None or branch.claude_branch is None:
            return result
        try:
            self._branches.publish_pending_changes(
                branch,
                message=f"Apply changes from {self._config.agent.name} for #{prepared.context.entity_number}",
            )
        except BranchOperationError as exc:
            log_warning_event(LOGGER, "job_publish_failed", branch=branch.claude_branch)
            return ExecutionResult(
                success=False,
                cost_usd=result.cost_usd,
                duration_ms=result.duration_ms,
                duration_api_ms=result.duration_api_ms,
                error=str(exc),
                output_text=result.output_text,
            )
        return result
