"""Tests for the provctl CLI."""
from __future__ import annotations

import json
import signal
from pathlib import Path

import pytest
from conftest import seed_recovery_scenario
from typer.testing import CliRunner, Result

from provctl import __version__
from provctl import cli as cli_module
from provctl.cli import TerminationRequested, app, exit_code_for
from provctl.exit_codes import ExitCode
from provctl.locking import LockManager
from provctl.logging import read_operations
from provctl.recovery import (
    AmbiguousCommit,
    DNSConflict,
    InvariantViolation,
    LockUnavailable,
    NotRecoverable,
    SecretRestoreFailed,
)
from provctl.state import (
    CLUSTER_INSTALLATIONS_FILE,
    INSTALLATIONS_FILE,
    MULTITENANT_DATABASES_FILE,
    StateRegistry,
)
from provctl.store import RegistryStore

runner = CliRunner()


def _prepare_environment(tmp_path: Path, *, seed: bool = True) -> dict[str, str]:
    state_dir = tmp_path / "state"
    registry = StateRegistry(state_dir / "registry")
    registry.ensure_root()
    if seed:
        seed_recovery_scenario(registry)
    return {
        "PROVCTL_CONFIG_FILE": str(tmp_path / "config.yml"),
        "PROVCTL_STATE_DIR": str(state_dir),
        "PROVCTL_LOGS_DIR": str(tmp_path / "logs"),
        "PROVCTL_RUNTIME_DIR": str(tmp_path / "run"),
        "PROVCTL_OWNER_ID": "cli-owner",
        "PROVCTL_SECRETS__BACKEND": "registry",
    }


def _registry(tmp_path: Path) -> StateRegistry:
    return StateRegistry(tmp_path / "state" / "registry")


def _invoke(env: dict[str, str], *args: str) -> Result:
    return runner.invoke(app, list(args), env=env)


def _recover(env: dict[str, str], *extra: str) -> Result:
    return _invoke(
        env,
        "installation",
        "recover",
        "--installation",
        "inst-1",
        "--installation-database",
        "db-1",
        *extra,
    )


def _last_operation(tmp_path: Path) -> dict[str, object]:
    return read_operations(tmp_path / "logs")[-1]


def test_version_flag(tmp_path: Path) -> None:
    """--version prints the package version."""
    env = _prepare_environment(tmp_path, seed=False)

    result = _invoke(env, "--version")

    assert result.exit_code == 0
    assert f"provctl {__version__}" in result.stdout
    assert _last_operation(tmp_path)["command"] == "root --version"


def test_help_without_subcommand(tmp_path: Path) -> None:
    """Running without a subcommand prints help."""
    env = _prepare_environment(tmp_path, seed=False)

    result = _invoke(env)

    assert result.exit_code == 0
    assert "installation" in result.stdout


def test_recover_scenario(tmp_path: Path) -> None:
    """Recovery moves inst-1 back to creation-requested inside db-1."""
    env = _prepare_environment(tmp_path)

    result = _recover(env, "--json")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["phase"] == "committed"
    assert payload["lock_released"] is True
    assert payload["already_recovered"] is False

    registry = _registry(tmp_path)
    assert registry.find(INSTALLATIONS_FILE, "inst-1")["state"] == "creation-requested"
    assert registry.find(CLUSTER_INSTALLATIONS_FILE, "ci-1")["state"] == "creation-requested"
    database = registry.find(MULTITENANT_DATABASES_FILE, "db-1")
    assert database["installations"] == ["inst-2", "inst-1"]
    assert database["lock_acquired_at"] == 0

    record = _last_operation(tmp_path)
    assert record["command"] == "installation recover"
    assert record["args"]["owner_id"] == "cli-owner"
    assert record["result"]["status"] == "success"
    assert record["result"]["changed"] == 3


def test_recover_twice_reports_already_recovered(tmp_path: Path) -> None:
    """A second invocation succeeds without changing anything."""
    env = _prepare_environment(tmp_path)
    assert _recover(env).exit_code == 0
    registry = _registry(tmp_path)
    before = registry.read_collection(MULTITENANT_DATABASES_FILE)

    result = _recover(env)

    assert result.exit_code == 0, result.output
    assert "already recovered" in result.stdout
    assert registry.read_collection(MULTITENANT_DATABASES_FILE) == before
    assert _last_operation(tmp_path)["result"]["changed"] == 0


def test_recover_dry_run_changes_nothing(tmp_path: Path) -> None:
    """--dry-run validates without writing."""
    env = _prepare_environment(tmp_path)
    registry = _registry(tmp_path)
    before = registry.read_collection(INSTALLATIONS_FILE)

    result = _recover(env, "--dry-run")

    assert result.exit_code == 0, result.output
    assert "Dry run" in result.stdout
    assert registry.read_collection(INSTALLATIONS_FILE) == before
    assert _last_operation(tmp_path)["result"]["message"] == "Dry run complete."


def test_recover_dns_conflict_exit_code(tmp_path: Path) -> None:
    """Validation failures exit with the validation code and log the phase."""
    env = _prepare_environment(tmp_path)
    registry = _registry(tmp_path)
    entries = registry.read_collection(INSTALLATIONS_FILE)
    entries[1]["dns"] = "tenant.example.com"
    registry.write_collection(INSTALLATIONS_FILE, entries)

    result = _recover(env, "--json")

    assert result.exit_code == int(ExitCode.VALIDATION)
    payload = json.loads(result.stdout)
    assert payload["error"] == "DNSConflict"
    assert payload["phase"] == "validating"
    record = _last_operation(tmp_path)
    assert record["result"]["status"] == "error"
    assert record["rc"] == int(ExitCode.VALIDATION)


def test_recover_locked_database_exit_code(tmp_path: Path) -> None:
    """A lock held by another owner exits with the locked code."""
    env = _prepare_environment(tmp_path)
    store = RegistryStore(
        registry=_registry(tmp_path),
        locks=LockManager(tmp_path / "run", 1.0),
    )
    store.lock_multitenant_database("db-1", "other-owner")

    result = _recover(env)

    assert result.exit_code == int(ExitCode.LOCKED)
    assert "acquiring-lock" in result.stdout


def test_recover_owner_option_overrides_config(tmp_path: Path) -> None:
    """--owner-id replaces the configured owner token."""
    env = _prepare_environment(tmp_path)

    result = _recover(env, "--owner-id", "ticket-42")

    assert result.exit_code == 0, result.output
    assert _last_operation(tmp_path)["args"]["owner_id"] == "ticket-42"


def test_recover_requires_options(tmp_path: Path) -> None:
    """Both identifiers are required."""
    env = _prepare_environment(tmp_path)

    result = _invoke(env, "installation", "recover", "--installation", "inst-1")

    assert result.exit_code == 2


def test_installation_show_and_list(tmp_path: Path) -> None:
    """Installations can be inspected as JSON."""
    env = _prepare_environment(tmp_path)

    shown = _invoke(env, "installation", "show", "inst-1", "--json")
    listed = _invoke(env, "installation", "list", "--json")
    listed_all = _invoke(env, "installation", "list", "--include-deleted", "--json")

    assert shown.exit_code == 0, shown.output
    details = json.loads(shown.stdout)
    assert details["state"] == "deleted"
    assert details["cluster_installations"][0]["id"] == "ci-1"
    assert [item["id"] for item in json.loads(listed.stdout)["installations"]] == ["inst-2"]
    assert [item["id"] for item in json.loads(listed_all.stdout)["installations"]] == [
        "inst-1",
        "inst-2",
    ]


def test_installation_show_missing(tmp_path: Path) -> None:
    """Unknown installations exit with the validation code."""
    env = _prepare_environment(tmp_path)

    result = _invoke(env, "installation", "show", "missing")

    assert result.exit_code == int(ExitCode.VALIDATION)
    assert "not found" in result.stdout


def test_installation_list_table(tmp_path: Path) -> None:
    """The default list output is a table."""
    env = _prepare_environment(tmp_path)

    result = _invoke(env, "installation", "list")

    assert result.exit_code == 0
    assert "inst-2" in result.stdout
    assert "inst-1" not in result.stdout


def test_database_show_and_list(tmp_path: Path) -> None:
    """Multi-tenant databases can be inspected."""
    env = _prepare_environment(tmp_path)

    shown = _invoke(env, "database", "show", "db-1", "--json")
    listed = _invoke(env, "database", "list", "--json")
    table = _invoke(env, "database", "list")

    assert shown.exit_code == 0, shown.output
    assert json.loads(shown.stdout)["installations"] == ["inst-2"]
    assert [item["id"] for item in json.loads(listed.stdout)["databases"]] == ["db-1"]
    assert "db-1" in table.stdout


def test_database_unlock_requires_force_for_other_owner(tmp_path: Path) -> None:
    """Locks held by another owner need --force to clear."""
    env = _prepare_environment(tmp_path)
    registry = _registry(tmp_path)
    store = RegistryStore(registry=registry, locks=LockManager(tmp_path / "run", 1.0))
    store.lock_multitenant_database("db-1", "crashed-run")

    refused = _invoke(env, "database", "unlock", "db-1")
    assert refused.exit_code == int(ExitCode.LOCKED)
    assert registry.find(MULTITENANT_DATABASES_FILE, "db-1")["lock_acquired_by"] == "crashed-run"

    forced = _invoke(env, "database", "unlock", "db-1", "--force")
    assert forced.exit_code == 0, forced.output
    assert registry.find(MULTITENANT_DATABASES_FILE, "db-1")["lock_acquired_at"] == 0
    record = _last_operation(tmp_path)
    assert record["result"]["context"]["previous_owner"] == "crashed-run"


def test_database_unlock_own_lock(tmp_path: Path) -> None:
    """The configured owner may release its own lock without --force."""
    env = _prepare_environment(tmp_path)
    registry = _registry(tmp_path)
    store = RegistryStore(registry=registry, locks=LockManager(tmp_path / "run", 1.0))
    store.lock_multitenant_database("db-1", "cli-owner")

    result = _invoke(env, "database", "unlock", "db-1")

    assert result.exit_code == 0, result.output
    assert registry.find(MULTITENANT_DATABASES_FILE, "db-1")["lock_acquired_by"] is None


def test_database_unlock_when_unlocked(tmp_path: Path) -> None:
    """Unlocking an unlocked database is a no-op success."""
    env = _prepare_environment(tmp_path)

    result = _invoke(env, "database", "unlock", "db-1", "--force")

    assert result.exit_code == 0
    assert "not locked" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """config show renders the merged configuration."""
    env = _prepare_environment(tmp_path, seed=False)

    result = _invoke(env, "config", "show", "--json")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["owner_id"] == "cli-owner"
    assert payload["secrets"]["backend"] == "registry"
    assert payload["registry_dir"] == str(tmp_path / "state" / "registry")


def test_lock_timeout_flag_overrides_config(tmp_path: Path) -> None:
    """--lock-timeout is applied as an override."""
    env = _prepare_environment(tmp_path, seed=False)

    result = _invoke(env, "--lock-timeout", "7.5", "config", "show", "--json")

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["lock_timeout"] == 7.5


def test_invalid_config_exits_with_environment_code(tmp_path: Path) -> None:
    """Configuration errors exit with the environment code."""
    env = _prepare_environment(tmp_path, seed=False)
    Path(env["PROVCTL_CONFIG_FILE"]).write_text("unknown: 1\n", encoding="utf-8")

    result = _invoke(env, "config", "show")

    assert result.exit_code == int(ExitCode.ENVIRONMENT)


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (NotRecoverable("x"), ExitCode.VALIDATION),
        (DNSConflict("x", count=2), ExitCode.VALIDATION),
        (InvariantViolation("x"), ExitCode.ENVIRONMENT),
        (LockUnavailable("x"), ExitCode.LOCKED),
        (SecretRestoreFailed("x"), ExitCode.PROVIDER),
        (AmbiguousCommit("x"), ExitCode.AMBIGUOUS),
    ],
)
def test_exit_code_mapping(error: Exception, code: ExitCode) -> None:
    """Each recovery failure maps to a documented exit code."""
    assert exit_code_for(error) is code  # type: ignore[arg-type]


def test_main_converts_sigterm(monkeypatch: pytest.MonkeyPatch) -> None:
    """SIGTERM aborts through an exception and the handler is restored."""
    previous = signal.getsignal(signal.SIGTERM)

    def fake_app() -> None:
        assert signal.getsignal(signal.SIGTERM) is cli_module._raise_termination
        raise TerminationRequested("Received signal 15")

    monkeypatch.setattr(cli_module, "app", fake_app)

    with pytest.raises(SystemExit) as excinfo:
        cli_module.main()

    assert excinfo.value.code == 128 + signal.SIGTERM
    assert signal.getsignal(signal.SIGTERM) == previous
