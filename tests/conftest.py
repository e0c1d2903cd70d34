"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
import os
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest
import yaml

from certcompanion.accounts import AccountManager, ZeroSSLClient, account_ca_dir
from certcompanion.aliases import AliasStore
from certcompanion.config import AppConfig, load_config
from certcompanion.issuance import IssuanceOrchestrator
from certcompanion.logging import StructuredLogger
from certcompanion.providers.acme import AccountParams, AcmeExit, IssueParams
from certcompanion.providers.containers import ContainerProvider
from certcompanion.providers.nginx import NginxProvider
from certcompanion.reconcile import Reconciler
from certcompanion.services import ServiceFeed
from certcompanion.templates import TemplateEngine


class FakeAcmeClient:
    """ACME client double that writes the files a real client would."""

    def __init__(self) -> None:
        """Default to successful registration and issuance."""
        self.register_result = AcmeExit.SUCCESS
        self.update_result = AcmeExit.SUCCESS
        self.issue_result = AcmeExit.SUCCESS
        self.issue_by_domain: dict[str, AcmeExit] = {}
        self.calls: list[tuple[str, AccountParams | IssueParams]] = []

    @property
    def actions(self) -> list[str]:
        """Return the names of the calls made so far."""
        return [name for name, _ in self.calls]

    def register_account(self, params: AccountParams) -> AcmeExit:
        """Record the call and create the account file on success."""
        self.calls.append(("register", params))
        if self.register_result is AcmeExit.SUCCESS:
            account_file = (
                account_ca_dir(params.common.config_home, params.common.server) / "account.json"
            )
            account_file.parent.mkdir(parents=True, exist_ok=True)
            contact = [f"mailto:{params.email}"] if params.email else []
            account_file.write_text(json.dumps({"contact": contact}), encoding="utf-8")
        return self.register_result

    def update_account(self, params: AccountParams) -> AcmeExit:
        """Record the call."""
        self.calls.append(("update", params))
        return self.update_result

    def issue(self, params: IssueParams) -> AcmeExit:
        """Record the call and write the bundle files on success."""
        self.calls.append(("issue", params))
        result = self.issue_by_domain.get(params.domains[0], self.issue_result)
        if result is AcmeExit.SUCCESS:
            for path in (params.cert_file, params.key_file, params.ca_file, params.fullchain_file):
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(f"{params.domains[0]} {path.name}\n", encoding="utf-8")
        return result

@pytest.fixture
def acme_client() -> FakeAcmeClient:
    """Return a fresh fake ACME client."""
    return FakeAcmeClient()

@pytest.fixture
def nginx_calls(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, ...]]:
    """Record nginx invocations instead of running the binary."""
    calls: list[tuple[str, ...]] = []

    def fake_run(self: NginxProvider, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        calls.append(tuple(args))
        return subprocess.CompletedProcess([self.nginx_bin, *args], 0, "", "")

    monkeypatch.setattr(NginxProvider, "_run_nginx", fake_run)
    return calls

@pytest.fixture
def restarts(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Record container restarts instead of calling docker."""
    restarted: list[str] = []

    def fake_docker(
        self: ContainerProvider,
        command: str,
        *arguments: str,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        restarted.extend(arguments)
        return subprocess.CompletedProcess([self.docker_bin, command, *arguments], 0, "", "")

    monkeypatch.setattr(ContainerProvider, "_docker", fake_docker)
    return restarted

@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory for configs rooted in the temporary directory."""

    def factory(
        *,
        acme: dict[str, object] | None = None,
        proxy: dict[str, object] | None = None,
    ) -> AppConfig:
        overrides: dict[str, object] = {
            "cert_dir": str(tmp_path / "certs"),
            "acme_home": str(tmp_path / "acme"),
            "logs_dir": str(tmp_path / "logs"),
            "templates_dir": str(tmp_path / "templates"),
            "services_file": str(tmp_path / "services.yml"),
            "standalone_file": str(tmp_path / "standalone.yml"),
            "acme": {"webroot": str(tmp_path / "html"), **(acme or {})},
            "proxy": {
                "pid_file": str(tmp_path / "nginx.pid"),
                "vhost_dir": str(tmp_path / "vhost.d"),
                "conf_dir": str(tmp_path / "conf.d"),
                **(proxy or {}),
            },
        }
        return load_config(tmp_path / "config.yml", env={}, overrides=overrides)

    return factory

@pytest.fixture
def nginx_running(tmp_path: Path) -> Path:
    """Write a pid file naming the test process so nginx looks alive."""
    pid_file = tmp_path / "nginx.pid"
    pid_file.write_text(f"{os.getpid()}\n", encoding="utf-8")
    return pid_file

@pytest.fixture
def make_reconciler(
    make_config: Callable[..., AppConfig],
    acme_client: FakeAcmeClient,
    nginx_calls: list[tuple[str, ...]],
    restarts: list[str],
) -> Callable[..., Reconciler]:
    """Return a factory wiring real components around the fake collaborators."""

    def factory(**config_kwargs: dict[str, object]) -> Reconciler:
        config = make_config(**config_kwargs)
        templates = TemplateEngine.with_overrides(config.templates_dir)
        nginx = NginxProvider(
            templates=templates,
            vhost_dir=config.proxy.vhost_dir,
            conf_dir=config.proxy.conf_dir,
            pid_file=config.proxy.pid_file,
            webroot=config.acme.webroot,
        )
        aliases = AliasStore(config.cert_dir, config.files)
        orchestrator = IssuanceOrchestrator(
            config=config,
            acme_client=acme_client,
            aliases=aliases,
            nginx=nginx,
            containers=ContainerProvider(),
            defer_reload=config.proxy.reload_per_cycle,
        )
        return Reconciler(
            acme=config.acme,
            feed=ServiceFeed(config.services_file, config.standalone_file),
            accounts=AccountManager(config.acme_home, config.acme, ZeroSSLClient()),
            orchestrator=orchestrator,
            aliases=aliases,
            nginx=nginx,
            logger=StructuredLogger(config.logs_dir),
        )

    return factory

@pytest.fixture
def write_feed() -> Callable[[Path, str, list[dict[str, object]]], Path]:
    """Return a helper that writes a service feed file."""

    def writer(path: Path, key: str, entries: list[dict[str, object]]) -> Path:
        path.write_text(yaml.safe_dump({key: entries}), encoding="utf-8")
        return path

    return writer
