from __future__ import annotations

import json
from pathlib import Path

import pytest

from forge_fakes import FakeGateway, FakeGit, read_outputs
from forgepilot import cli, observability
from forgepilot.config import AgentConfig
from forgepilot.forge_gateway import ForgeApiError
from forgepilot.models import ExecutionResult, Issue
from forgepilot.tracking_comment import render_created_body


class _StubExecutor:
    def __init__(self, config: AgentConfig) -> None:
        _ = config

    def execute(self, request: object) -> ExecutionResult:
        _ = request
        return ExecutionResult(success=True, duration_ms=1000)


@pytest.fixture(autouse=True)
def isolated_secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(observability, "_SECRETS", set())


@pytest.fixture
def gateway(monkeypatch: pytest.MonkeyPatch) -> FakeGateway:
    fake = FakeGateway()
    fake.issues[5] = Issue(5, "Bug", "@claude fix", "bob", "open", "")
    monkeypatch.setattr(cli, "create_gateway", lambda profile, **kwargs: fake)
    monkeypatch.setattr(cli, "LocalGit", lambda workspace: FakeGit(workspace))
    monkeypatch.setattr(cli, "ClaudeCliExecutor", _StubExecutor)
    return fake


def _env(tmp_path: Path, body: str = "@claude fix it", **extra: str) -> dict[str, str]:
    event_path = tmp_path / "event.json"
    event_path.write_text(
        json.dumps(
            {
                "action": "created",
                "issue": {"number": 5, "title": "Bug", "body": "", "user": {"login": "bob"}},
                "comment": {"id": 88, "body": body, "user": {"login": "alice"}},
                "sender": {"login": "alice"},
            }
        ),
        encoding="utf-8",
    )
    env = {
        "GITHUB_TOKEN": "tok",
        "GITHUB_REPOSITORY": "o/r",
        "GITHUB_EVENT_NAME": "issue_comment",
        "GITHUB_EVENT_PATH": str(event_path),
        "GITHUB_ACTOR": "alice",
        "GITHUB_RUN_ID": "9",
        "GITHUB_OUTPUT": str(tmp_path / "out"),
        "GITHUB_WORKSPACE": str(tmp_path),
        "RUNNER_TEMP": str(tmp_path / "tmp"),
    }
    env.update(extra)
    return env


def test_build_parser_supports_commands() -> None:
    parser = cli.build_parser()

    parsed = parser.parse_args(["prepare", "--verbose", "--config", "f.toml"])
    assert parsed.command == "prepare"
    assert parsed.verbose is True
    assert parsed.config == Path("f.toml")
    assert parser.parse_args(["finalize"]).log_dir is None
    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_missing_configuration_exits_with_config_code(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["prepare"], env={"GITHUB_REPOSITORY": "o/r"}) == cli.EXIT_CONFIG
    assert "No forge token" in capsys.readouterr().err


def test_missing_event_exits_with_config_code() -> None:
    assert cli.main(["run"], env={"GITHUB_TOKEN": "t", "GITHUB_REPOSITORY": "o/r"}) == cli.EXIT_CONFIG


def test_prepare_writes_step_outputs(
    gateway: FakeGateway, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["prepare"], env=_env(tmp_path)) == cli.EXIT_OK

    outputs = read_outputs(tmp_path / "out")
    assert outputs["contains_trigger"] == "true"
    assert outputs["claude_comment_id"] == "1001"
    assert outputs["CLAUDE_BRANCH"].startswith("claude/issue-5-")
    assert Path(outputs["prompt_file"]).exists()
    assert len(gateway.comments) == 1
    assert capsys.readouterr().out == ""


def test_prepare_without_trigger_exits_ok(
    gateway: FakeGateway, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["prepare"], env=_env(tmp_path, body="thanks")) == cli.EXIT_OK
    assert "No trigger found, skipping remaining steps" in capsys.readouterr().out
    assert gateway.comments == {}


def test_denied_actor_exits_with_failure(gateway: FakeGateway, tmp_path: Path) -> None:
    gateway.permissions["alice"] = "read"
    assert cli.main(["run"], env=_env(tmp_path)) == cli.EXIT_FAILED
    assert read_outputs(tmp_path / "out")["contains_trigger"] == "false"


def test_run_executes_agent_and_finalizes(gateway: FakeGateway, tmp_path: Path) -> None:
    assert cli.main(["run"], env=_env(tmp_path)) == cli.EXIT_OK

    (comment_id,) = gateway.comments
    assert gateway.body_of(comment_id).startswith("**Claude finished @alice's task in 1s**")


def test_prepare_failure_exits_with_failure_and_records_error(
    gateway: FakeGateway, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    gateway.fail["get_issue"] = ForgeApiError("forge down", status=503)

    assert cli.main(["prepare"], env=_env(tmp_path)) == cli.EXIT_FAILED

    outputs = read_outputs(tmp_path / "out")
    assert outputs["prepare_error"] == "forge down"
    assert "event=job_failed" in capsys.readouterr().err


def test_finalize_updates_existing_comment(
    gateway: FakeGateway, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    gateway.comments[3000] = ("issue", render_created_body("Claude", "https://github.com/o/r/actions/runs/9"))

    code = cli.main(
        ["finalize"],
        env=_env(tmp_path, CLAUDE_COMMENT_ID="3000", TRIGGER_USERNAME="alice", CLAUDE_SUCCESS="false"),
    )

    assert code == cli.EXIT_OK
    assert "Updated tracking comment 3000" in capsys.readouterr().out
    assert gateway.body_of(3000).startswith("**Claude encountered an error**")


def test_finalize_requires_comment_id(gateway: FakeGateway, tmp_path: Path) -> None:
    _ = gateway
    assert cli.main(["finalize"], env=_env(tmp_path)) == cli.EXIT_CONFIG


def test_prepare_error_masks_forge_token(gateway: FakeGateway, tmp_path: Path) -> None:
    env = _env(tmp_path, GITHUB_TOKEN="ghp_abcdef123456")
    gateway.fail["get_issue"] = ForgeApiError("bad credentials ghp_abcdef123456", status=401)

    assert cli.main(["prepare"], env=env) == cli.EXIT_FAILED

    assert read_outputs(tmp_path / "out")["prepare_error"] == "bad credentials ***"
