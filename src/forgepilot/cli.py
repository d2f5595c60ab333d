from __future__ import annotations

import argparse
from collections.abc import Mapping, Sequence
import logging
import os
from pathlib import Path
import sys

from forgepilot.agent_adapter import ClaudeCliExecutor
from forgepilot.config import AppConfig, ConfigError, load_config, load_finalize_inputs
from forgepilot.events import load_event_payload, parse_event_context
from forgepilot.forge_gateway import create_gateway
from forgepilot.git_ops import LocalGit
from forgepilot.models import EventContext
from forgepilot.observability import (
    configure_logging,
    log_warning_event,
    mask_secrets,
    register_secret,
)
from forgepilot.orchestrator import JobPipeline
from forgepilot.step_outputs import StepOutputs


LOGGER = logging.getLogger("forgepilot.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="forgepilot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("prepare", "Evaluate the trigger, post the tracking comment and set up the branch"),
        ("run", "Run the whole job in-process, including the agent"),
        ("finalize", "Rewrite the tracking comment with the job outcome"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--config", type=Path, default=None, help="Optional TOML defaults file")
        sub.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Enable verbose runtime logging to stderr",
        )
        sub.add_argument(
            "--log-dir",
            type=Path,
            default=None,
            help="Also write daily log files to this directory",
        )
    return parser


def main(argv: Sequence[str] | None = None, *, env: Mapping[str, str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(bool(args.verbose), log_dir=args.log_dir)
    environ = os.environ if env is None else env

    try:
        config = load_config(environ, config_path=args.config)
        register_secret(config.forge.token)
        context = _load_context(config)
    except ConfigError as exc:
        print(f"forgepilot: configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    outputs = StepOutputs(config.run.output_path)
    try:
        if args.command == "prepare":
            return _cmd_prepare(config, context, outputs)
        if args.command == "run":
            return _cmd_run(config, context, outputs)
        if args.command == "finalize":
            return _cmd_finalize(config, context, environ)
    except ConfigError as exc:
        print(f"forgepilot: configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except Exception as exc:
        log_warning_event(LOGGER, "job_failed", command=args.command, error_type=type(exc).__name__)
        if "prepare_error" not in outputs.values:
            outputs.set("prepare_error", mask_secrets(str(exc)))
        print(f"forgepilot: {mask_secrets(str(exc))}", file=sys.stderr)
        return EXIT_FAILED

    raise RuntimeError(f"Unknown command: {args.command}")


def _load_context(config: AppConfig) -> EventContext:
    if config.run.event_name is None or config.run.event_path is None:
        raise ConfigError("GITHUB_EVENT_NAME and GITHUB_EVENT_PATH are required")
    payload = load_event_payload(config.run.event_path)
    return parse_event_context(
        event_name=config.run.event_name,
        payload=payload,
        repository=config.repository,
        actor=config.run.actor,
        run_id=config.run.run_id,
    )


def _pipeline(config: AppConfig, outputs: StepOutputs | None, *, with_agent: bool) -> JobPipeline:
    gateway = create_gateway(
        config.profile,
        api_url=config.forge.api_url,
        token=config.forge.token,
        repository=config.repository,
    )
    return JobPipeline(
        config,
        gateway=gateway,
        git=LocalGit(config.run.workspace),
        executor=ClaudeCliExecutor(config.agent) if with_agent else None,
        outputs=outputs,
    )


def _cmd_prepare(config: AppConfig, context: EventContext, outputs: StepOutputs) -> int:
    prepared = _pipeline(config, outputs, with_agent=False).prepare(context)
    if prepared.decision.denied:
        print(f"forgepilot: activation denied ({prepared.decision.reason})", file=sys.stderr)
        return EXIT_FAILED
    if not prepared.activated:
        print("No trigger found, skipping remaining steps")
    return EXIT_OK


def _cmd_run(config: AppConfig, context: EventContext, outputs: StepOutputs) -> int:
    report = _pipeline(config, outputs, with_agent=True).run(context)
    if report.prepared.decision.denied:
        print(f"forgepilot: activation denied ({report.prepared.decision.reason})", file=sys.stderr)
        return EXIT_FAILED
    if not report.prepared.activated:
        print("No trigger found, skipping remaining steps")
        return EXIT_OK
    return EXIT_OK if report.succeeded else EXIT_FAILED


def _cmd_finalize(config: AppConfig, context: EventContext, env: Mapping[str, str]) -> int:
    inputs = load_finalize_inputs(env)
    comment = _pipeline(config, None, with_agent=False).finalize_from_inputs(inputs, context)
    print(f"Updated tracking comment {comment.comment_id}")
    return EXIT_OK
