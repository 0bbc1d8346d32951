"""Typer-powered command line interface for ``provctl``.

The CLI wires configuration, the YAML state registry, the secret store backend
and structured logging together, then exposes installation recovery plus the
inspection and lock cleanup commands operators need around it.
"""
from __future__ import annotations

import json
import signal
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .providers import AWSSecretStore, RegistrySecretStore, SecretStore
from .recovery import (
    AmbiguousCommit,
    DNSConflict,
    InvariantViolation,
    LockUnavailable,
    NotRecoverable,
    PersistenceFailed,
    RecoveryError,
    RecoveryOrchestrator,
    ResourceNotFound,
    SecretRestoreFailed,
    UnsupportedConfiguration,
)
from .state import StateRegistry, StateRegistryError
from .store import RegistryStore, StoreError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to provctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit output as JSON instead of a table.",
)

OWNER_ID_OPTION = typer.Option(
    None,
    "--owner-id",
    help="Lock owner token (defaults to the configured or generated owner id).",
)

_EXIT_CODES: tuple[tuple[type[RecoveryError], ExitCode], ...] = (
    (AmbiguousCommit, ExitCode.AMBIGUOUS),
    (LockUnavailable, ExitCode.LOCKED),
    (InvariantViolation, ExitCode.ENVIRONMENT),
    (SecretRestoreFailed, ExitCode.PROVIDER),
    (PersistenceFailed, ExitCode.PROVIDER),
    (NotRecoverable, ExitCode.VALIDATION),
    (DNSConflict, ExitCode.VALIDATION),
    (UnsupportedConfiguration, ExitCode.VALIDATION),
    (ResourceNotFound, ExitCode.VALIDATION),
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Multi-tenant provisioner administration CLI.

        Recover deleted installations into their multi-tenant database and
        inspect or clean up the records involved.
        """
    ).strip(),
)


class TerminationRequested(BaseException):
    """Raised from the SIGTERM handler so cleanup blocks still run."""


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    store: RegistryStore
    logger: StructuredLogger
    secret_store: SecretStore


def exit_code_for(error: RecoveryError) -> ExitCode:
    """Return the CLI exit code for a recovery failure."""
    for error_type, code in _EXIT_CODES:
        if isinstance(error, error_type):
            return code
    return ExitCode.PROVIDER


def _build_secret_store(
    config: AppConfig, registry: StateRegistry, locks: LockManager
) -> SecretStore:
    if config.secrets.backend == "registry":
        return RegistrySecretStore(registry=registry, locks=locks)
    return AWSSecretStore(region_name=config.secrets.region)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
        registry = StateRegistry(config.registry_dir)
        registry.ensure_root()
        locks = LockManager(config.runtime_dir, config.lock_timeout)
        secret_store = _build_secret_store(config, registry, locks)
    except (ConfigError, StateRegistryError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        store=RegistryStore(registry=registry, locks=locks),
        logger=StructuredLogger(config.logs_dir),
        secret_store=secret_store,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the provctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override registry lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"provctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def _render_record(title: str, data: Mapping[str, object]) -> None:
    table = Table(show_header=True, header_style="bold magenta", title=title)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = "" if value is None else str(value)
        table.add_row(key, rendered)
    console.print(table)


installation_app = typer.Typer(help="Inspect and recover installations.")
database_app = typer.Typer(help="Inspect and manage multi-tenant databases.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(installation_app, name="installation")
app.add_typer(database_app, name="database")
app.add_typer(config_app, name="config")


@installation_app.command("recover")
def installation_recover(
    ctx: typer.Context,
    installation: str = typer.Option(
        ...,
        "--installation",
        help="ID of the deleted installation to recover.",
    ),
    installation_database: str = typer.Option(
        ...,
        "--installation-database",
        help="ID of the multi-tenant database the installation belonged to.",
    ),
    owner_id: str | None = OWNER_ID_OPTION,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Validate recovery preconditions without changing anything.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the recovery result as JSON.",
    ),
) -> None:
    """Recover a deleted installation into its multi-tenant database."""
    runtime = _get_runtime(ctx)
    effective_owner = (owner_id or runtime.config.owner_id).strip()

    with runtime.logger.operation(
        "installation recover",
        args={
            "installation": installation,
            "installation_database": installation_database,
            "owner_id": effective_owner,
            "dry_run": dry_run,
        },
        target={"kind": "installation", "id": installation},
    ) as op:
        if not effective_owner:
            _command_error(op, "Lock owner id must not be empty.", rc=int(ExitCode.VALIDATION))

        orchestrator = RecoveryOrchestrator(
            runtime.store,
            runtime.secret_store,
            owner_id=effective_owner,
            policy=runtime.config.recovery,
            secret_name_template=runtime.config.secrets.name_template,
        )
        try:
            result = orchestrator.recover(
                installation, installation_database, dry_run=dry_run, op=op
            )
        except RecoveryError as exc:
            rc = int(exit_code_for(exc))
            message = f"Recovery failed during {exc.phase or 'unknown'} phase: {exc}"
            if json_output:
                console.print_json(data=exc.to_dict())
                op.error(message, rc=rc, context=exc.to_dict())
                raise typer.Exit(code=rc) from exc
            _command_error(op, message, rc=rc, context=exc.to_dict())

        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)

        if dry_run:
            if not json_output:
                console.print(
                    f"[yellow]Dry run[/yellow]: installation {installation} can be recovered "
                    f"into {installation_database}."
                )
            op.success("Dry run complete.", changed=0, context=payload)
            return

        if result.warnings:
            if not json_output:
                for warning in result.warnings:
                    console.print(f"[yellow]{warning}[/yellow]")
            op.warning(
                "Installation recovered with warnings.",
                warnings=result.warnings,
                changed=len(result.changed),
                context=payload,
            )
            return

        if not json_output:
            if result.already_recovered:
                console.print(
                    f"Installation [bold]{installation}[/bold] was already recovered; "
                    "no changes made."
                )
            else:
                console.print(
                    f"[green]Installation {installation} recovered[/green] "
                    f"({len(result.changed)} change(s)); creation requested."
                )
        op.success(
            "Installation recovered.",
            changed=len(result.changed),
            context=payload,
        )


@installation_app.command("show")
def installation_show(
    ctx: typer.Context,
    installation_id: str = typer.Argument(..., help="ID of the installation to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show an installation and its cluster installations."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "installation show",
        args={"json": json_output},
        target={"kind": "installation", "id": installation_id},
    ) as op:
        try:
            installation = runtime.store.get_installation(installation_id)
            cluster_installations = runtime.store.get_cluster_installations(installation_id)
        except StoreError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.PROVIDER))
        if installation is None:
            _command_error(
                op,
                f"Installation '{installation_id}' not found.",
                rc=int(ExitCode.VALIDATION),
            )

        data = installation.to_entry()
        data["cluster_installations"] = [ci.to_entry() for ci in cluster_installations]
        if json_output:
            console.print_json(data=data)
        else:
            _render_record(f"Installation {installation_id}", data)
        op.success("Reported installation details.", changed=0)


@installation_app.command("list")
def installation_list(
    ctx: typer.Context,
    include_deleted: bool = typer.Option(
        False,
        "--include-deleted",
        help="Include soft-deleted installations.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List installations from the registry."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "installation list",
        args={"include_deleted": include_deleted, "json": json_output},
        target={"kind": "installation", "scope": "registry"},
    ) as op:
        try:
            installations = runtime.store.list_installations(include_deleted=include_deleted)
        except StoreError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.PROVIDER))

        if json_output:
            console.print_json(
                data={"installations": [item.to_entry() for item in installations]}
            )
            op.success("Reported installation list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("DNS")
        table.add_column("State")
        table.add_column("Database")
        table.add_column("Filestore")

        if not installations:
            table.add_row("(none)", "", "", "", "")
        for item in installations:
            table.add_row(item.id, item.dns, item.state.value, item.database, item.filestore)

        console.print(table)
        op.success("Reported installation list.", changed=0)


@database_app.command("show")
def database_show(
    ctx: typer.Context,
    database_id: str = typer.Argument(..., help="ID of the multi-tenant database."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a multi-tenant database, its members and its lock."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "database show",
        args={"json": json_output},
        target={"kind": "database", "id": database_id},
    ) as op:
        try:
            database = runtime.store.get_multitenant_database(database_id)
        except StoreError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.PROVIDER))
        if database is None:
            _command_error(
                op,
                f"Multitenant database '{database_id}' not found.",
                rc=int(ExitCode.VALIDATION),
            )

        data = database.to_entry()
        if json_output:
            console.print_json(data=data)
        else:
            _render_record(f"Multitenant database {database_id}", data)
        op.success("Reported database details.", changed=0)


@database_app.command("list")
def database_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List multi-tenant databases from the registry."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "database list",
        args={"json": json_output},
        target={"kind": "database", "scope": "registry"},
    ) as op:
        try:
            databases = runtime.store.list_multitenant_databases()
        except StoreError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.PROVIDER))

        if json_output:
            console.print_json(data={"databases": [item.to_entry() for item in databases]})
            op.success("Reported database list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Type")
        table.add_column("Installations")
        table.add_column("Locked by")

        if not databases:
            table.add_row("(none)", "", "", "")
        for item in databases:
            table.add_row(
                item.id,
                item.database_type,
                str(len(item.installations)),
                item.lock_acquired_by or "",
            )

        console.print(table)
        op.success("Reported database list.", changed=0)


@database_app.command("unlock")
def database_unlock(
    ctx: typer.Context,
    database_id: str = typer.Argument(..., help="ID of the multi-tenant database."),
    owner_id: str | None = OWNER_ID_OPTION,
    force: bool = typer.Option(
        False,
        "--force",
        help="Release the lock regardless of which owner holds it.",
    ),
) -> None:
    """Release a multi-tenant database lock left behind by a crashed run."""
    runtime = _get_runtime(ctx)
    effective_owner = owner_id or runtime.config.owner_id

    with runtime.logger.operation(
        "database unlock",
        args={"owner_id": effective_owner, "force": force},
        target={"kind": "database", "id": database_id},
    ) as op:
        try:
            database = runtime.store.get_multitenant_database(database_id)
            if database is None:
                _command_error(
                    op,
                    f"Multitenant database '{database_id}' not found.",
                    rc=int(ExitCode.VALIDATION),
                )
            previous_owner = database.lock_acquired_by
            released = runtime.store.unlock_multitenant_database(
                database_id, effective_owner, force=force
            )
        except StoreError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.PROVIDER))

        if not released:
            if not database.is_locked:
                console.print(f"Multitenant database {database_id} is not locked.")
                op.success("Database already unlocked.", changed=0)
                return
            _command_error(
                op,
                f"Multitenant database '{database_id}' is locked by {previous_owner}; "
                "use --force to release it.",
                rc=int(ExitCode.LOCKED),
            )

        console.print(
            f"[green]Released lock on {database_id}[/green] (held by {previous_owner})."
        )
        op.success(
            "Database lock released.",
            changed=1,
            context={"previous_owner": previous_owner, "force": force},
        )


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def _raise_termination(signum: int, frame: FrameType | None) -> None:
    raise TerminationRequested(f"Received signal {signum}")


def main() -> None:
    """Console script entry point."""
    previous = signal.signal(signal.SIGTERM, _raise_termination)
    try:
        app()
    except TerminationRequested as exc:
        console.print(f"[red]{exc}; aborted.[/red]")
        raise SystemExit(128 + signal.SIGTERM) from exc
    finally:
        signal.signal(signal.SIGTERM, previous)


__all__ = ["RuntimeContext", "TerminationRequested", "app", "exit_code_for", "main"]
