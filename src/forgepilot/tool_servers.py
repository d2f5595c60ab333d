from __future__ import annotations

import json
import logging
from pathlib import Path

from forgepilot.config import ConfigError, ForgeConfig, ToolConfig
from forgepilot.observability import log_event
from forgepilot.prompts import PROMPT_DIR_NAME
from forgepilot.tools import FORGE_SERVER, LOCAL_GIT_SERVER


LOGGER = logging.getLogger("forgepilot.tool_servers")

TOOL_SERVER_CONFIG_FILE_NAME = "tool-servers.json"


def build_tool_server_config(
    *,
    forge: ForgeConfig,
    tools: ToolConfig,
    branch: str,
    base_branch: str,
    repo_dir: str,
) -> str:
    """Render the JSON tool-provider configuration handed to the agent.

    Two providers are always present: the forge API provider and the local git
    provider. Extra servers from ``tools.extra_tool_servers`` are merged in but
    never replace those two.
    """
    env = {
        "GITHUB_TOKEN": forge.token,
        "REPO_OWNER": forge.repository.owner,
        "REPO_NAME": forge.repository.name,
        "BRANCH_NAME": branch,
        "BASE_BRANCH": base_branch,
        "REPO_DIR": repo_dir,
        "GITEA_API_URL": forge.api_url,
        "FORGE_PROVIDER": forge.profile.name,
    }
    servers: dict[str, object] = {
        FORGE_SERVER: _server_entry(tools.forge_tools_command, env),
        LOCAL_GIT_SERVER: _server_entry(tools.local_git_tools_command, env),
    }

    extra = _parse_extra_servers(tools.extra_tool_servers)
    skipped: list[str] = []
    for name, entry in extra.items():
        if name in servers:
            skipped.append(name)
            continue
        servers[name] = entry

    log_event(
        LOGGER,
        "tool_servers_configured",
        servers=sorted(servers.keys()),
        skipped_overrides=skipped,
        branch=branch,
    )
    return json.dumps({"mcpServers": servers}, indent=2, sort_keys=False)


def _server_entry(command: tuple[str, ...], env: dict[str, str]) -> dict[str, object]:
    return {"command": command[0], "args": list(command[1:]), "env": dict(env)}


def _parse_extra_servers(raw: str | None) -> dict[str, object]:
    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"MCP_CONFIG must be valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ConfigError("MCP_CONFIG must be a JSON object")
    servers = parsed.get("mcpServers", {})
    if not isinstance(servers, dict):
        raise ConfigError("MCP_CONFIG mcpServers must be a JSON object")
    return {str(name): entry for name, entry in servers.items()}


def write_tool_server_config(runner_temp: Path, config_json: str) -> Path:
    config_dir = runner_temp / PROMPT_DIR_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / TOOL_SERVER_CONFIG_FILE_NAME
    path.write_text(config_json, encoding="utf-8")
    log_event(LOGGER, "tool_server_config_written", path=str(path))
    return path
