from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
import shlex
import tomllib
from typing import Literal, cast

from forgepilot.models import CommentTarget, Repository
from forgepilot.provider import ProviderProfile, detect_provider
from forgepilot.tools import parse_tool_list


BranchStrategy = Literal["new", "base"]

DEFAULT_SERVER_URL = "https://github.com"
DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_TRIGGER_PHRASE = "@claude"
DEFAULT_BRANCH_PREFIX = "claude/"
DEFAULT_AGENT_NAME = "Claude"


@dataclass(frozen=True)
class ForgeConfig:
    token: str
    repository: Repository
    server_url: str
    api_url: str
    profile: ProviderProfile


@dataclass(frozen=True)
class RunConfig:
    workspace: Path
    run_id: str
    actor: str
    event_name: str | None
    event_path: Path | None
    output_path: Path | None
    runner_temp: Path


@dataclass(frozen=True)
class TriggerConfig:
    trigger_phrase: str = DEFAULT_TRIGGER_PHRASE
    assignee_trigger: str | None = None
    label_trigger: str | None = None
    direct_prompt: str | None = None
    override_prompt: str | None = None

    @property
    def bypasses_phrase_match(self) -> bool:
        return bool(self.direct_prompt) or bool(self.override_prompt)


@dataclass(frozen=True)
class BranchConfig:
    base_branch: str | None = None
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    strategy: BranchStrategy = "new"


@dataclass(frozen=True)
class ToolConfig:
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    read_ci: bool = False
    use_commit_signing: bool = False
    extra_tool_servers: str | None = None
    forge_tools_command: tuple[str, ...] = ("forgepilot-forge-tools",)
    local_git_tools_command: tuple[str, ...] = ("forgepilot-local-git-tools",)


@dataclass(frozen=True)
class AgentConfig:
    name: str = DEFAULT_AGENT_NAME
    command: tuple[str, ...] = ("claude",)
    model: str | None = None
    max_turns: int | None = None
    custom_instructions: str | None = None


@dataclass(frozen=True)
class AppConfig:
    forge: ForgeConfig
    run: RunConfig
    trigger: TriggerConfig
    branch: BranchConfig
    tools: ToolConfig
    agent: AgentConfig

    @property
    def profile(self) -> ProviderProfile:
        return self.forge.profile

    @property
    def repository(self) -> Repository:
        return self.forge.repository


@dataclass(frozen=True)
class FinalizeInputs:
    """State handed from the prepare step to the finalize step."""

    comment_id: int
    comment_target: CommentTarget
    base_branch: str
    claude_branch: str | None
    trigger_username: str | None
    output_file: Path | None
    agent_succeeded: bool
    prepare_succeeded: bool
    prepare_error: str | None


class ConfigError(ValueError):
    pass


def load_config(env: Mapping[str, str], *, config_path: Path | None = None) -> AppConfig:
    file_data: dict[str, object] = {}
    if config_path is not None:
        with config_path.open("rb") as fh:
            file_data = tomllib.load(fh)

    trigger_data = _optional_table(file_data, "trigger")
    branch_data = _optional_table(file_data, "branch")
    tools_data = _optional_table(file_data, "tools")
    agent_data = _optional_table(file_data, "agent")

    forge = _load_forge_config(env)
    run = _load_run_config(env)

    trigger = TriggerConfig(
        trigger_phrase=_str_setting(
            env, "TRIGGER_PHRASE", trigger_data, "trigger_phrase", DEFAULT_TRIGGER_PHRASE
        ),
        assignee_trigger=_optional_str_setting(
            env, "ASSIGNEE_TRIGGER", trigger_data, "assignee_trigger"
        ),
        label_trigger=_optional_str_setting(env, "LABEL_TRIGGER", trigger_data, "label_trigger"),
        direct_prompt=_optional_str_setting(env, "DIRECT_PROMPT", trigger_data, "direct_prompt"),
        override_prompt=_optional_str_setting(
            env, "OVERRIDE_PROMPT", trigger_data, "override_prompt"
        ),
    )
    if not trigger.trigger_phrase.strip():
        raise ConfigError("trigger_phrase must be a non-empty string")

    branch = BranchConfig(
        base_branch=_optional_str_setting(env, "BASE_BRANCH", branch_data, "base_branch"),
        branch_prefix=_str_setting(
            env, "BRANCH_PREFIX", branch_data, "branch_prefix", DEFAULT_BRANCH_PREFIX
        ),
        strategy=_branch_strategy_setting(env, branch_data),
    )

    read_ci = _bool_setting(env, None, tools_data, "read_ci", False) or _permissions_grant_ci(
        env.get("ADDITIONAL_PERMISSIONS", "")
    )
    tools = ToolConfig(
        allowed_tools=_tool_list_setting(env, "ALLOWED_TOOLS", tools_data, "allowed_tools"),
        disallowed_tools=_tool_list_setting(
            env, "DISALLOWED_TOOLS", tools_data, "disallowed_tools"
        ),
        read_ci=read_ci,
        use_commit_signing=_bool_setting(
            env, "USE_COMMIT_SIGNING", tools_data, "use_commit_signing", False
        ),
        extra_tool_servers=_optional_str_setting(
            env, "MCP_CONFIG", tools_data, "extra_tool_servers"
        ),
        forge_tools_command=_command_setting(
            env,
            "FORGE_TOOLS_COMMAND",
            tools_data,
            "forge_tools_command",
            ToolConfig.forge_tools_command,
        ),
        local_git_tools_command=_command_setting(
            env,
            "LOCAL_GIT_TOOLS_COMMAND",
            tools_data,
            "local_git_tools_command",
            ToolConfig.local_git_tools_command,
        ),
    )

    agent = AgentConfig(
        name=_str_setting(env, "AGENT_NAME", agent_data, "name", DEFAULT_AGENT_NAME),
        command=_command_setting(env, "AGENT_COMMAND", agent_data, "command", ("claude",)),
        model=_optional_str_setting(env, "MODEL", agent_data, "model"),
        max_turns=_optional_positive_int_setting(env, "MAX_TURNS", agent_data, "max_turns"),
        custom_instructions=_optional_str_setting(
            env, "CUSTOM_INSTRUCTIONS", agent_data, "custom_instructions"
        ),
    )

    return AppConfig(
        forge=forge,
        run=run,
        trigger=trigger,
        branch=branch,
        tools=tools,
        agent=agent,
    )


def load_finalize_inputs(env: Mapping[str, str]) -> FinalizeInputs:
    comment_id_raw = _env_value(env, "CLAUDE_COMMENT_ID")
    if comment_id_raw is None:
        raise ConfigError("CLAUDE_COMMENT_ID is required for the finalize step")
    try:
        comment_id = int(comment_id_raw)
    except ValueError as exc:
        raise ConfigError(f"CLAUDE_COMMENT_ID must be an integer: {comment_id_raw!r}") from exc

    target_raw = (_env_value(env, "CLAUDE_COMMENT_TARGET") or "issue").lower()
    if target_raw not in {"issue", "review"}:
        raise ConfigError("CLAUDE_COMMENT_TARGET must be one of: issue, review")

    output_file = _env_value(env, "OUTPUT_FILE")
    return FinalizeInputs(
        comment_id=comment_id,
        comment_target=cast(CommentTarget, target_raw),
        base_branch=_env_value(env, "BASE_BRANCH") or "main",
        claude_branch=_env_value(env, "CLAUDE_BRANCH"),
        trigger_username=_env_value(env, "TRIGGER_USERNAME"),
        output_file=Path(output_file) if output_file else None,
        agent_succeeded=(env.get("CLAUDE_SUCCESS", "").strip().lower() != "false"),
        prepare_succeeded=(env.get("PREPARE_SUCCESS", "").strip().lower() != "false"),
        prepare_error=_env_value(env, "PREPARE_ERROR"),
    )


def resolve_server_url(env: Mapping[str, str]) -> str:
    for key in ("GITEA_SERVER_URL", "GITHUB_SERVER_URL"):
        value = _env_value(env, key)
        if value is not None:
            return value.rstrip("/")
    return DEFAULT_SERVER_URL


def resolve_api_url(env: Mapping[str, str], *, server_url: str) -> str:
    for key in ("GITEA_API_URL", "GITHUB_API_URL"):
        value = _env_value(env, key)
        if value is not None:
            return value.rstrip("/")
    return derive_api_url(server_url)


def derive_api_url(server_url: str) -> str:
    if "github.com" in server_url:
        return DEFAULT_GITHUB_API_URL
    return f"{server_url.rstrip('/')}/api/v1"


def resolve_token(env: Mapping[str, str]) -> str:
    for key in ("OVERRIDE_GITHUB_TOKEN", "GITHUB_TOKEN"):
        value = _env_value(env, key)
        if value is not None:
            return value
    raise ConfigError(
        "No forge token available: set OVERRIDE_GITHUB_TOKEN or GITHUB_TOKEN in the job environment"
    )


def parse_repository(value: str) -> Repository:
    owner, sep, name = value.strip().partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ConfigError(f"GITHUB_REPOSITORY must look like owner/name, got {value!r}")
    return Repository(owner=owner, name=name)


def _load_forge_config(env: Mapping[str, str]) -> ForgeConfig:
    token = resolve_token(env)
    repository_raw = _env_value(env, "GITHUB_REPOSITORY")
    if repository_raw is None:
        raise ConfigError("GITHUB_REPOSITORY is required")
    server_url = resolve_server_url(env)
    api_url = resolve_api_url(env, server_url=server_url)
    try:
        profile = detect_provider(api_url, override=_env_value(env, "FORGE_PROVIDER"))
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    return ForgeConfig(
        token=token,
        repository=parse_repository(repository_raw),
        server_url=server_url,
        api_url=api_url,
        profile=profile,
    )


def _load_run_config(env: Mapping[str, str]) -> RunConfig:
    workspace = _env_value(env, "GITHUB_WORKSPACE") or os.getcwd()
    event_path = _env_value(env, "GITHUB_EVENT_PATH")
    output_path = _env_value(env, "GITHUB_OUTPUT")
    runner_temp = _env_value(env, "RUNNER_TEMP") or "/tmp"
    return RunConfig(
        workspace=Path(workspace),
        run_id=_env_value(env, "GITHUB_RUN_ID") or "",
        actor=_env_value(env, "GITHUB_ACTOR") or "",
        event_name=_env_value(env, "GITHUB_EVENT_NAME"),
        event_path=Path(event_path) if event_path else None,
        output_path=Path(output_path) if output_path else None,
        runner_temp=Path(runner_temp),
    )


def _env_value(env: Mapping[str, str], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _optional_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _raw_setting(
    env: Mapping[str, str], env_key: str | None, table: dict[str, object], key: str
) -> object:
    if env_key is not None:
        env_value = _env_value(env, env_key)
        if env_value is not None:
            return env_value
    return table.get(key)


def _str_setting(
    env: Mapping[str, str],
    env_key: str,
    table: dict[str, object],
    key: str,
    default: str,
) -> str:
    value = _raw_setting(env, env_key, table, key)
    if value is None:
        return default
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _optional_str_setting(
    env: Mapping[str, str], env_key: str, table: dict[str, object], key: str
) -> str | None:
    value = _raw_setting(env, env_key, table, key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string if provided")
    return value.strip() or None


def _bool_setting(
    env: Mapping[str, str],
    env_key: str | None,
    table: dict[str, object],
    key: str,
    default: bool,
) -> bool:
    value = _raw_setting(env, env_key, table, key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
    raise ConfigError(f"{key} must be a boolean")


def _optional_positive_int_setting(
    env: Mapping[str, str], env_key: str, table: dict[str, object], key: str
) -> int | None:
    value = _raw_setting(env, env_key, table, key)
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = int(value)
        except ValueError as exc:
            raise ConfigError(f"{key} must be an integer >= 1 if provided") from exc
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{key} must be an integer >= 1 if provided")
    return value


def _tool_list_setting(
    env: Mapping[str, str], env_key: str, table: dict[str, object], key: str
) -> tuple[str, ...]:
    value = _raw_setting(env, env_key, table, key)
    if value is None:
        return ()
    if isinstance(value, str):
        return parse_tool_list(value)
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        stripped = item.strip()
        if stripped and stripped not in out:
            out.append(stripped)
    return tuple(out)


def _command_setting(
    env: Mapping[str, str],
    env_key: str,
    table: dict[str, object],
    key: str,
    default: tuple[str, ...],
) -> tuple[str, ...]:
    value = _raw_setting(env, env_key, table, key)
    if value is None:
        return default
    if isinstance(value, str):
        parts = tuple(shlex.split(value))
    elif isinstance(value, list) and all(isinstance(item, str) for item in value):
        parts = tuple(cast(list[str], value))
    else:
        raise ConfigError(f"{key} must be a command string or a list of strings")
    if not parts:
        raise ConfigError(f"{key} must not be empty")
    return parts


def _branch_strategy_setting(env: Mapping[str, str], table: dict[str, object]) -> BranchStrategy:
    value = _raw_setting(env, "BRANCH_STRATEGY", table, "strategy")
    if value is None:
        return "new"
    if not isinstance(value, str) or value.strip().lower() not in {"new", "base"}:
        raise ConfigError("branch strategy must be one of: new, base")
    return cast(BranchStrategy, value.strip().lower())


def _permissions_grant_ci(raw: str) -> bool:
    for line in raw.splitlines():
        name, sep, level = line.partition(":")
        if not sep:
            continue
        if name.strip().lower() == "actions" and level.strip().lower() == "read":
            return True
    return False
