"""Command-line interface for enhance-ticket.

Subcommands:

- ``serve``: run the webhook server.
- ``validate``: load and validate the configuration, then exit.
- ``test-trigger``: show which trigger rule a synthetic event would match.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import uvicorn

from enhance_ticket import __version__
from enhance_ticket.config import Config, ConfigError, check_workspace_paths, load_config
from enhance_ticket.dispatch import match_trigger
from enhance_ticket.events import ChangeEvent, LabelRef
from enhance_ticket.label_diff import normalize_label
from enhance_ticket.logging import get_logger, setup_logging
from enhance_ticket.server import create_app
from enhance_ticket.triggers import TriggerRule, default_trigger_rules
from enhance_ticket.types import EventKind, Operation

logger = get_logger(__name__)


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        action="append",
        default=None,
        help="Config file; repeat to merge several (default: ENHANCE_TICKET_CONFIG "
        "or ./config.yaml)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: ./.env)",
    )


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        args: Optional list of arguments to parse. If None, uses sys.argv.

    Returns:
        Parsed arguments namespace. ``command`` names the subcommand.
    """
    parser = argparse.ArgumentParser(
        prog="enhance-ticket",
        description="enhance-ticket - Linear webhooks to coding agent runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the webhook server")
    _add_config_arguments(serve)
    serve.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (overrides server.log_level)",
    )
    serve.add_argument("--host", default=None, help="Bind address (overrides server.host)")
    serve.add_argument("--port", type=int, default=None, help="Port (overrides server.port)")

    validate = subparsers.add_parser("validate", help="Validate the configuration")
    _add_config_arguments(validate)
    validate.add_argument(
        "--skip-path-checks",
        action="store_true",
        help="Do not check that workspace paths exist and are git repositories",
    )

    test_trigger = subparsers.add_parser(
        "test-trigger",
        help="Show which trigger rule an event would match",
        description=(
            "Build a synthetic event and report the first matching trigger rule.\n\n"
            "Examples:\n"
            "  enhance-ticket test-trigger ENG-1 --labels code\n"
            "  enhance-ticket test-trigger ENG-1 --operation update "
            "--labels bug,code --previous-labels bug\n"
            "  enhance-ticket test-trigger ENG-1 --comment '@claude why does this fail?'"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_config_arguments(test_trigger)
    test_trigger.add_argument("issue_id", help="Issue identifier, e.g. ENG-42")
    test_trigger.add_argument("--labels", default=None, help="Comma-separated current labels")
    test_trigger.add_argument(
        "--previous-labels",
        default=None,
        help="Comma-separated labels before the update (omit for no snapshot)",
    )
    test_trigger.add_argument("--comment", default=None, help="Comment body (comment event)")
    test_trigger.add_argument(
        "--operation",
        choices=sorted(Operation.values()),
        default=Operation.CREATED.value,
        help="Event operation (default: create)",
    )
    test_trigger.add_argument(
        "--default-rules",
        action="store_true",
        help="Use the built-in trigger rules instead of loading the configuration",
    )

    return parser.parse_args(args)


def build_test_event(
    issue_id: str,
    operation: Operation,
    labels: list[str],
    previous_labels: list[str] | None,
    comment: str | None,
) -> ChangeEvent:
    """Build the synthetic event used by ``test-trigger``.

    Label ids are derived from the normalized label names, so the same name
    in ``labels`` and ``previous_labels`` refers to the same label.
    """
    if comment is not None:
        return ChangeEvent(
            kind=EventKind.COMMENT_POSTED,
            operation=operation,
            subject_id=f"{issue_id}-comment",
            comment_body=comment,
            comment_id=f"{issue_id}-comment",
            issue_id=issue_id,
            identifier=issue_id,
        )

    detailed = tuple(LabelRef(id=normalize_label(name), name=name) for name in labels)
    return ChangeEvent(
        kind=EventKind.ITEM_CHANGED,
        operation=operation,
        subject_id=issue_id,
        current_labels=frozenset(labels),
        labels_detailed=detailed,
        current_label_ids=tuple(label.id for label in detailed),
        previous_label_ids=(
            None
            if previous_labels is None
            else tuple(normalize_label(name) for name in previous_labels)
        ),
        issue_id=issue_id,
        identifier=issue_id,
    )


def _load(parsed: argparse.Namespace) -> Config | None:
    try:
        return load_config(parsed.config, parsed.env_file)
    except ConfigError as e:
        print("Configuration is invalid:", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        return None


def run_serve(parsed: argparse.Namespace) -> int:
    """Load the configuration and serve the webhook app with uvicorn."""
    config = _load(parsed)
    if config is None:
        return 1

    server = config.server
    log_level = parsed.log_level or server.log_level
    setup_logging(log_level, json_format=server.log_json, diagnostic_tags=server.diagnostic_tags)
    for error in check_workspace_paths(config):
        logger.warning(error)

    host = parsed.host or server.host
    port = parsed.port or server.port
    logger.info("Starting enhance-ticket %s on %s:%d", __version__, host, port)
    uvicorn.run(
        create_app(config),
        host=host,
        port=port,
        log_level=log_level.lower(),
        access_log=False,
    )
    return 0


def run_validate(parsed: argparse.Namespace) -> int:
    """Validate the configuration and print a short summary."""
    config = _load(parsed)
    if config is None:
        return 1

    errors = [] if parsed.skip_path_checks else check_workspace_paths(config)
    if errors:
        print("Configuration is invalid:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return 1

    print("Configuration is valid.")
    print(f"  Workspaces: {len(config.linear.workspaces)}")
    for workspace in config.linear.workspaces:
        print(f"    - {workspace.name} (team {workspace.team_id}): {workspace.local_path}")
    print(f"  Trigger rules: {len(config.linear.triggers)}")
    for rule in config.linear.triggers:
        print(f"    - {_describe_rule(rule)}")
    print(f"  Bot mention name: {config.bot.mention_name}")
    print(f"  GitHub publishing: {'enabled' if config.github.enabled else 'disabled'}")
    return 0


def _describe_rule(rule: TriggerRule) -> str:
    description = rule.describe()
    if rule.forced_agent is not None:
        description += f" (agent: {rule.forced_agent})"
    return description


def run_test_trigger(parsed: argparse.Namespace) -> int:
    """Report the first rule matching a synthetic event; 1 when none matches."""
    if parsed.default_rules:
        rules = default_trigger_rules()
    else:
        config = _load(parsed)
        if config is None:
            return 1
        rules = config.linear.triggers

    previous = None if parsed.previous_labels is None else _split_csv(parsed.previous_labels)
    event = build_test_event(
        parsed.issue_id,
        Operation(parsed.operation),
        _split_csv(parsed.labels),
        previous,
        parsed.comment,
    )
    decision = match_trigger(rules, event)
    if decision is None:
        print(f"No trigger matched {event.kind} {event.operation} on {parsed.issue_id}.")
        return 1
    print(f"Matched: {_describe_rule(decision.rule)}")
    return 0


COMMANDS = {
    "serve": run_serve,
    "validate": run_validate,
    "test-trigger": run_test_trigger,
}


def main(args: list[str] | None = None) -> int:
    """Main entry point for the command line.

    Args:
        args: Optional list of command-line arguments.

    Returns:
        Exit code for the process.
    """
    parsed = parse_args(args)
    return COMMANDS[parsed.command](parsed)


__all__ = ["build_test_event", "main", "parse_args"]
