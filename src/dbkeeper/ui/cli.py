"""Command-line interface router for dbkeeper."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dbkeeper.config import (
    ConfigLoadError,
    ConfigValidationError,
    effective_config,
    load_config,
)
from dbkeeper.observability import correlation_scope, setup_logging, shutdown_logging
from dbkeeper.persistence import (
    DatabaseConfigurationError,
    DatabaseError,
    DatabaseProvisioner,
    DatabaseValidator,
    SqlScriptMigrations,
    TemplateSource,
    integrity_errors,
    is_in_memory,
)


@dataclass(slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="dbkeeper",
        description=(
            "dbkeeper - provision and migrate embedded SQLite databases.\n\n"
            "Common workflows:\n"
            "  dbkeeper path contacts                       Show where a database lives\n"
            "  dbkeeper migrate contacts --scripts sql/     Create or migrate a database\n"
            "  dbkeeper check contacts                      Run an integrity check\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to dbkeeper TOML config (default: ./dbkeeper.toml if present).",
    )
    common.add_argument(
        "--root",
        default=None,
        help="Override storage.root for this invocation.",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    path_parser = subparsers.add_parser(
        "path",
        parents=[common],
        help="Print the on-disk path for a logical database name",
    )
    path_parser.add_argument("name", help="Logical database name")
    path_parser.set_defaults(handler=_cmd_path)

    check_parser = subparsers.add_parser(
        "check",
        parents=[common],
        help="Check that a database exists and passes PRAGMA quick_check",
    )
    check_parser.add_argument("name", help="Logical database name")
    check_parser.add_argument(
        "--full",
        action="store_true",
        help="Also run the full PRAGMA integrity_check and list its findings",
    )
    check_parser.set_defaults(handler=_cmd_check)

    version_parser = subparsers.add_parser(
        "version",
        parents=[common],
        help="Print the stored schema version (PRAGMA user_version)",
    )
    version_parser.add_argument("name", help="Logical database name")
    version_parser.set_defaults(handler=_cmd_version)

    migrate_parser = subparsers.add_parser(
        "migrate",
        parents=[common],
        help="Open or create a database and migrate it with numbered SQL scripts",
        epilog=(
            "Scripts are named NNNN_<name>.sql; optional NNNN_<name>.down.sql files\n"
            "enable downgrades. Examples:\n"
            "  dbkeeper migrate contacts --scripts sql/\n"
            "  dbkeeper migrate contacts --scripts sql/ --version 2 --template seed.sqlite\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    migrate_parser.add_argument("name", help="Logical database name")
    migrate_parser.add_argument("--scripts", required=True, help="Directory of migration scripts")
    migrate_parser.add_argument(
        "--version",
        type=int,
        default=None,
        help="Target schema version (default: latest script)",
    )
    migrate_parser.add_argument(
        "--template",
        default=None,
        help="Template database used when the database has to be created",
    )
    migrate_parser.add_argument(
        "--readonly",
        action="store_true",
        help="Open read-only; fails when a migration would be needed",
    )
    migrate_parser.set_defaults(handler=_cmd_migrate)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective configuration",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_path(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _command_session(args, config):
        provisioner = _build_provisioner(config)
        path = provisioner.locator.database_path(args.name)

    payload: dict[str, object] = {
        "command": "path",
        "name": args.name,
        "in_memory": is_in_memory(args.name),
        "path": None if path is None else str(path),
        "exists": path is not None and path.is_file(),
    }
    if args.json:
        _emit_json(payload)
    else:
        print(payload["path"] if path is not None else ":memory:")
    return 0


def _cmd_check(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _command_session(args, config):
        provisioner = _build_provisioner(config)
        valid = DatabaseValidator(provisioner).is_valid_database(args.name)
        findings: list[str] = []
        if args.full and provisioner.locator.database_path(args.name) is not None:
            queue = provisioner.open(args.name, None, readonly=True)
            if queue is not None:
                try:
                    findings = list(integrity_errors(queue))
                except DatabaseError as exc:
                    findings = [str(exc)]
                finally:
                    queue.close()

    valid = valid and not findings
    payload: dict[str, object] = {
        "command": "check",
        "name": args.name,
        "valid": valid,
        "findings": findings,
    }
    if args.json:
        _emit_json(payload)
    else:
        print("ok" if valid else "invalid")
        for finding in findings:
            print(f"- {finding}")
    return 0 if valid else 1


def _cmd_version(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _command_session(args, config):
        provisioner = _build_provisioner(config)
        if is_in_memory(args.name):
            raise CLIError("in-memory databases have no stored version", exit_code=1)
        queue = provisioner.open(args.name, None, readonly=True)
        if queue is None:
            raise CLIError(f"database {args.name!r} does not exist or cannot be opened")
        try:
            version = queue.user_version
        except DatabaseError as exc:
            raise CLIError(f"unable to read the version of {args.name!r}: {exc}") from exc
        finally:
            queue.close()

    if args.json:
        _emit_json({"command": "version", "name": args.name, "version": version})
    else:
        print(version)
    return 0


def _cmd_migrate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _command_session(args, config):
        provisioner = _build_provisioner(config)
        template = None if args.template is None else TemplateSource(_resolve_file(args.template))
        try:
            delegate = SqlScriptMigrations(
                args.scripts,
                target_version=args.version,
                template=template,
                journal_mode=config["connection"].get("journal_mode"),
            )
        except DatabaseError as exc:
            raise CLIError(str(exc), exit_code=2) from exc

        queue = provisioner.open_or_create(
            args.name,
            delegate.target_version,
            readonly=args.readonly,
            delegate=delegate,
        )
        if queue is None:
            reason = delegate.last_error
            cause = reason.__cause__ if reason is not None else None
            detail = str(cause or reason or "unknown failure")
            raise CLIError(f"migration of {args.name!r} failed: {detail}")
        try:
            version = queue.user_version
            path = queue.path
        finally:
            queue.close()

    payload: dict[str, object] = {
        "command": "migrate",
        "name": args.name,
        "path": path,
        "version": version,
        "latest_version": delegate.latest_version,
    }
    if args.json:
        _emit_json(payload)
    else:
        print(f"{args.name}: version {version} ({path})")
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    redacted = effective_config(config)
    if args.json:
        _emit_json({"command": "config", "config": redacted})
    else:
        print(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, object] = {}
    if args.root is not None:
        overrides["storage.root"] = str(Path(args.root).expanduser().resolve())
    try:
        return load_config(args.config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _build_provisioner(config: Mapping[str, Any]) -> DatabaseProvisioner:
    try:
        return DatabaseProvisioner.from_config(config)
    except DatabaseConfigurationError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


@contextmanager
def _command_session(args: argparse.Namespace, config: Mapping[str, Any]) -> Iterator[None]:
    setup_logging(config["observability"])
    try:
        with correlation_scope(command=args.command, database=args.name):
            yield
    finally:
        shutdown_logging()


def _resolve_file(raw: str) -> Path:
    candidate = Path(raw).expanduser().resolve()
    if not candidate.is_file():
        raise CLIError(f"template not found: {candidate}", exit_code=2)
    return candidate


__all__ = ["CLIError", "build_parser", "run_cli"]
