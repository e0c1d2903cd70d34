"""Tests for the certcompanion CLI."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from certcompanion import __version__
from certcompanion.aliases import AliasStore
from certcompanion.cli import app
from certcompanion.daemon import ServiceDaemon
from certcompanion.models import IssueOutcome, IssueResult
from certcompanion.reconcile import CycleReport, Reconciler

runner = CliRunner()


def _prepare_environment(
    tmp_path: Path,
    *,
    config_overrides: dict[str, object] | None = None,
) -> dict[str, str]:
    config: dict[str, object] = {
        "cert_dir": str(tmp_path / "certs"),
        "acme_home": str(tmp_path / "acme"),
        "logs_dir": str(tmp_path / "logs"),
        "templates_dir": str(tmp_path / "templates"),
        "services_file": str(tmp_path / "services.yml"),
        "standalone_file": str(tmp_path / "standalone.yml"),
        "acme": {"webroot": str(tmp_path / "html")},
        "proxy": {
            "pid_file": str(tmp_path / "nginx.pid"),
            "vhost_dir": str(tmp_path / "vhost.d"),
            "conf_dir": str(tmp_path / "conf.d"),
        },
    }
    if config_overrides:
        config.update(config_overrides)
    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"CERTCOMPANION_CONFIG_FILE": str(config_file)}


def _flat(output: str) -> str:
    """Collapse Rich line wrapping so assertions can match whole sentences."""
    return " ".join(output.split())


def _extract_json(output: str) -> dict[str, object]:
    start = output.index("{")
    return json.loads(output[start:])


def _add_managed_alias(tmp_path: Path, bundle: str, domain: str) -> AliasStore:
    store = AliasStore(tmp_path / "certs")
    bundle_dir = store.bundle_dir(bundle)
    bundle_dir.mkdir(parents=True)
    for name in ("cert.pem", "key.pem", "fullchain.pem"):
        (bundle_dir / name).write_text(name, encoding="utf-8")
    store.write_marker(bundle)
    store.ensure_alias(bundle, domain)
    return store


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    env = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Calling the CLI without a subcommand shows help output."""
    env = _prepare_environment(tmp_path)
    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "renew" in result.stdout
    assert "status" in result.stdout


def test_invalid_configuration_exits_with_validation_code(tmp_path: Path) -> None:
    """Configuration errors are reported before any command runs."""
    env = _prepare_environment(tmp_path, config_overrides={"update_interval": -5})

    result = runner.invoke(app, ["status"], env=env)

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout


def test_run_source_only_loads_components_without_daemon(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """``run --source-only`` wires everything up and exits."""
    env = _prepare_environment(tmp_path)

    def unexpected_run(self: ServiceDaemon, **kwargs: object) -> None:
        raise AssertionError("daemon must not start")

    monkeypatch.setattr(ServiceDaemon, "run", unexpected_run)

    result = runner.invoke(app, ["run", "--source-only"], env=env)

    assert result.exit_code == 0
    assert "daemon not started." in _flat(result.stdout)
    log_lines = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    assert json.loads(log_lines[-1])["command"] == "run --source-only"


def test_run_starts_daemon_with_interval(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """``run`` hands the configured interval and force flag to the daemon."""
    env = _prepare_environment(tmp_path, config_overrides={"update_interval": 900})
    seen: list[tuple[float, bool]] = []

    def fake_run(self: ServiceDaemon, *, force_renew: bool = False) -> None:
        seen.append((self.interval, force_renew))

    monkeypatch.setattr(ServiceDaemon, "run", fake_run)

    result = runner.invoke(app, ["run", "--force-renew"], env=env)

    assert result.exit_code == 0
    assert seen == [(900.0, True)]
    assert "reconciling every 900 seconds" in _flat(result.stdout)


def test_renew_reports_environment_error_when_nginx_down(
    tmp_path: Path,
    nginx_calls: list[tuple[str, ...]],
) -> None:
    """Without a running nginx the pass is skipped with exit code 3."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["renew"], env=env)

    assert result.exit_code == 3
    assert "nginx is not running" in _flat(result.stdout)
    assert nginx_calls == []


def test_renew_json_reports_failures(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Failed services surface in the JSON payload and as exit code 4."""
    env = _prepare_environment(tmp_path)
    forced: list[bool] = []

    def fake_cycle(self: Reconciler, *, force_renew: bool = False) -> CycleReport:
        forced.append(force_renew)
        return CycleReport(
            results=[
                IssueResult("web", IssueOutcome.ISSUED, reload_needed=True, restarted=True),
                IssueResult("api", IssueOutcome.FAILED, message="issuance failed"),
            ],
            reloaded=True,
        )

    monkeypatch.setattr(Reconciler, "run_cycle", fake_cycle)

    result = runner.invoke(app, ["renew", "--force", "--json"], env=env)

    assert result.exit_code == 4
    assert forced == [True]
    payload = _extract_json(result.stdout)
    assert payload["issued"] == 1
    assert payload["failed"] == 1
    assert payload["reloaded"] is True
    assert payload["services"] == [
        {"id": "web", "outcome": "issued", "restarted": True, "message": ""},
        {"id": "api", "outcome": "failed", "restarted": False, "message": "issuance failed"},
    ]


def test_renew_table_summarises_cycle(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A clean pass renders the summary line and exits 0."""
    env = _prepare_environment(tmp_path)

    def fake_cycle(self: Reconciler, *, force_renew: bool = False) -> CycleReport:
        return CycleReport(results=[IssueResult("web", IssueOutcome.SKIPPED)])

    monkeypatch.setattr(Reconciler, "run_cycle", fake_cycle)

    result = runner.invoke(app, ["renew"], env=env)

    assert result.exit_code == 0
    output = _flat(result.stdout)
    assert "Issued 0, not due 1, failed 0" in output
    assert "nginx reloaded" not in output


def test_cleanup_removes_undeclared_aliases(tmp_path: Path) -> None:
    """``cleanup`` prunes aliases of services that are no longer declared."""
    env = _prepare_environment(tmp_path)
    store = _add_managed_alias(tmp_path, "old.example.com", "old.example.com")

    result = runner.invoke(app, ["cleanup"], env=env)

    assert result.exit_code == 0
    assert "Removed aliases for 1 domain(s) and 0 standalone server block(s)." in _flat(
        result.stdout
    )
    assert store.aliased_domains() == set()
    assert store.bundle_dir("old.example.com").is_dir()


def test_cleanup_rejects_corrupt_feed(tmp_path: Path) -> None:
    """An unreadable feed aborts cleanup with the validation exit code."""
    env = _prepare_environment(tmp_path)
    (tmp_path / "services.yml").write_text("services: [oops\n", encoding="utf-8")

    result = runner.invoke(app, ["cleanup"], env=env)

    assert result.exit_code == 2
    assert "Cleanup skipped" in result.stdout


def test_status_without_bundles(tmp_path: Path) -> None:
    """An empty certificate directory is reported plainly."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["status"], env=env)

    assert result.exit_code == 0
    assert "No managed certificates in" in _flat(result.stdout)


def test_status_json_lists_bundles(tmp_path: Path) -> None:
    """``status --json`` lists managed bundles with their aliases."""
    env = _prepare_environment(tmp_path)
    _add_managed_alias(tmp_path, "a.example.com", "a.example.com")

    result = runner.invoke(app, ["status", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    bundles = payload["bundles"]
    assert isinstance(bundles, list)
    (bundle,) = bundles
    assert bundle["name"] == "a.example.com"
    assert bundle["domains"] == ["a.example.com"]
    assert bundle["error"] is not None
