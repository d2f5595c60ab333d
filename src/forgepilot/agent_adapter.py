from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import time
from typing import cast

from forgepilot.config import AgentConfig
from forgepilot.models import ExecutionResult, ToolCapabilitySet
from forgepilot.observability import log_event, log_warning_event
from forgepilot.shell import CommandError, run


LOGGER = logging.getLogger("forgepilot.agent_adapter")


class ExternalAgentError(RuntimeError):
    pass


@dataclass(frozen=True)
class AgentRequest:
    prompt: str
    tools: ToolCapabilitySet
    tool_server_config_path: Path
    cwd: Path
    env: dict[str, str]


class AgentExecutor(ABC):
    @abstractmethod
    def execute(self, request: AgentRequest) -> ExecutionResult:
        """Run the external agent once and report its outcome; never raises for agent failures."""


class ClaudeCliExecutor(AgentExecutor):
    def __init__(self, config: AgentConfig) -> None:
        self._config = config

    def build_command(self, request: AgentRequest) -> list[str]:
        cmd = [
            *self._config.command,
            "-p",
            "--output-format",
            "json",
            "--mcp-config",
            str(request.tool_server_config_path),
        ]
        if request.tools.allowed:
            cmd.extend(["--allowedTools", ",".join(request.tools.allowed)])
        if request.tools.disallowed:
            cmd.extend(["--disallowedTools", ",".join(request.tools.disallowed)])
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        if self._config.max_turns is not None:
            cmd.extend(["--max-turns", str(self._config.max_turns)])
        return cmd

    def execute(self, request: AgentRequest) -> ExecutionResult:
        cmd = self.build_command(request)
        log_event(
            LOGGER,
            "agent_execution_started",
            command=cmd[0],
            allowed_count=len(request.tools.allowed),
            prompt_chars=len(request.prompt),
        )
        started = time.monotonic()
        try:
            raw = run(cmd, cwd=request.cwd, input_text=request.prompt, env=request.env)
            result = parse_agent_output(raw)
        except (CommandError, ExternalAgentError, OSError) as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            log_warning_event(
                LOGGER,
                "agent_execution_failed",
                error_type=type(exc).__name__,
                duration_ms=elapsed_ms,
            )
            result = ExecutionResult(
                success=False,
                duration_ms=elapsed_ms,
                error=_error_text(exc),
            )
        if result.duration_ms is None:
            result = ExecutionResult(
                success=result.success,
                cost_usd=result.cost_usd,
                duration_ms=int((time.monotonic() - started) * 1000),
                duration_api_ms=result.duration_api_ms,
                error=result.error,
                output_text=result.output_text,
            )
        log_event(
            LOGGER,
            "agent_execution_finished",
            success=result.success,
            cost_usd=result.cost_usd,
            duration_ms=result.duration_ms,
        )
        return result


def parse_agent_output(raw: str) -> ExecutionResult:
    """Parse the agent's JSON output.

    Accepts either one result object or a stream of records (a JSON array or
    one object per line) whose last ``result`` record carries the metrics.
    """
    text = raw.strip()
    if not text:
        raise ExternalAgentError("Agent produced no output")
    records = _parse_records(text)
    result_record: dict[str, object] | None = None
    for record in records:
        if record.get("type") == "result" or "total_cost_usd" in record or "is_error" in record:
            result_record = record
    if result_record is None:
        result_record = records[-1]

    is_error = result_record.get("is_error") is True or result_record.get("subtype") not in (
        None,
        "success",
    )
    output_text = result_record.get("result")
    return ExecutionResult(
        success=not is_error,
        cost_usd=_as_float(result_record.get("total_cost_usd", result_record.get("cost_usd"))),
        duration_ms=_as_int(result_record.get("duration_ms")),
        duration_api_ms=_as_int(result_record.get("duration_api_ms")),
        error=(output_text if isinstance(output_text, str) else "Agent reported an error")
        if is_error
        else None,
        output_text=output_text if isinstance(output_text, str) else None,
    )


def load_execution_file(path: Path, *, succeeded: bool = True) -> ExecutionResult:
    """Read metrics from an execution log written by an externally run agent step.

    The file is a JSON array; its last element is a ``system`` record with
    ``cost_usd`` and ``duration_ms``.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        log_warning_event(LOGGER, "execution_file_unreadable", path=str(path), error_type=type(exc).__name__)
        return ExecutionResult(success=succeeded)
    if not isinstance(data, list) or not data or not isinstance(data[-1], dict):
        log_warning_event(LOGGER, "execution_file_unexpected_shape", path=str(path))
        return ExecutionResult(success=succeeded)
    last = cast(dict[str, object], data[-1])
    if last.get("role") != "system" and last.get("type") != "result":
        return ExecutionResult(success=succeeded)
    return ExecutionResult(
        success=succeeded,
        cost_usd=_as_float(last.get("cost_usd", last.get("total_cost_usd"))),
        duration_ms=_as_int(last.get("duration_ms")),
        duration_api_ms=_as_int(last.get("duration_api_ms")),
    )


def _parse_records(text: str) -> list[dict[str, object]]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
        lines = [line for line in text.splitlines() if line.strip()]
        items: list[object] = []
        for line in lines:
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise ExternalAgentError(f"Agent output is not valid JSON: {line[:200]}") from exc
        parsed = items
    if isinstance(parsed, dict):
        return [cast(dict[str, object], parsed)]
    if isinstance(parsed, list):
        records = [cast(dict[str, object], item) for item in parsed if isinstance(item, dict)]
        if records:
            return records
    raise ExternalAgentError("Agent output did not contain a result record")


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, CommandError):
        stderr = exc.stderr.strip()
        return stderr or f"Agent command exited with status {exc.returncode}"
    return str(exc)


def _as_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None
