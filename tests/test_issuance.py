"""Tests for the per-service issuance orchestrator."""
from __future__ import annotations

import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from certcompanion.accounts import account_ca_dir
from certcompanion.models import (
    AccountInfo,
    AliasResult,
    IssueOutcome,
    IssueResult,
    Service,
    ServiceOverrides,
)
from certcompanion.providers.acme import AcmeClientError, AcmeExit
from certcompanion.providers.containers import ContainerError, ContainerProvider
from certcompanion.reconcile import Reconciler
from certcompanion.resolver import resolve_plan


def _service(*domains: str, standalone: bool = False, **overrides: object) -> Service:
    return Service(
        id="web",
        domains=domains,
        overrides=ServiceOverrides(**overrides),
        standalone=standalone,
    )


def _issue(reconciler: Reconciler, service: Service, *, force_renew: bool = False) -> IssueResult:
    plan = resolve_plan(service, reconciler.acme)
    account = reconciler.accounts.resolve(plan)
    return reconciler.orchestrator.issue_or_renew(service, plan, account, force_renew=force_renew)


def test_new_service_registers_issues_and_aliases(
    make_reconciler: Callable[..., Reconciler],
    acme_client: Any,
    restarts: list[str],
) -> None:
    """First issuance registers the account, issues and exposes every domain."""
    reconciler = make_reconciler(acme={"email": "ops@example.com"})
    service = _service("a.example.com", "b.example.com", restart_on_renew=True)

    result = _issue(reconciler, service)

    assert result.outcome is IssueOutcome.ISSUED
    assert result.reload_needed is True
    assert result.restarted is True
    assert restarts == ["web"]
    assert acme_client.actions == ["register", "issue"]
    assert result.aliases == {
        "a.example.com": AliasResult.CREATED,
        "b.example.com": AliasResult.CREATED,
    }

    cert_dir = reconciler.aliases.cert_dir
    assert os.readlink(cert_dir / "b.example.com.crt") == "./a.example.com/fullchain.pem"
    assert (cert_dir / "a.example.com" / ".companion").is_file()
    issue_params = acme_client.calls[1][1]
    assert issue_params.domains == ("a.example.com", "b.example.com")
    assert issue_params.force is False
    assert issue_params.common.config_home == reconciler.accounts.acme_home / "ops@example.com"


def test_renewal_not_due_is_a_skip(
    make_reconciler: Callable[..., Reconciler],
    acme_client: Any,
    restarts: list[str],
) -> None:
    """A second pass with nothing due changes nothing and requests no reload."""
    reconciler = make_reconciler()
    service = _service("a.example.com", restart_on_renew=True)
    _issue(reconciler, service)
    restarts.clear()
    acme_client.issue_result = AcmeExit.RENEWAL_NOT_DUE

    result = _issue(reconciler, service)

    assert result.outcome is IssueOutcome.SKIPPED
    assert result.reload_needed is False
    assert result.restarted is False
    assert restarts == []
    assert result.aliases == {"a.example.com": AliasResult.ALREADY_CORRECT}
    assert acme_client.actions == ["register", "issue", "issue"]


def test_force_renew_is_forwarded(
    make_reconciler: Callable[..., Reconciler],
    acme_client: Any,
) -> None:
    """The force flag reaches the ACME client."""
    reconciler = make_reconciler()

    _issue(reconciler, _service("a.example.com"), force_renew=True)

    assert acme_client.calls[-1][1].force is True


def test_registration_failure_is_terminal(
    make_reconciler: Callable[..., Reconciler],
    acme_client: Any,
) -> None:
    """A failed registration fails the service without attempting issuance."""
    reconciler = make_reconciler()
    acme_client.register_result = AcmeExit.FAILURE

    result = _issue(reconciler, _service("a.example.com"))

    assert result.outcome is IssueOutcome.FAILED
    assert "registration failed" in result.message
    assert acme_client.actions == ["register"]
    assert reconciler.aliases.aliased_domains() == set()


def test_email_update_failure_still_issues(
    make_reconciler: Callable[..., Reconciler],
    acme_client: Any,
) -> None:
    """Updating the account email is best effort."""
    reconciler = make_reconciler()
    service = _service("a.example.com", email="new@example.com")
    plan = resolve_plan(service, reconciler.acme)
    config_home, _ = reconciler.accounts.slot_for(plan)
    account_file = account_ca_dir(config_home, plan.ca_uri) / "account.json"
    account_file.parent.mkdir(parents=True)
    account_file.write_text(json.dumps({"contact": ["mailto:old@example.com"]}), encoding="utf-8")
    acme_client.update_result = AcmeExit.FAILURE

    result = _issue(reconciler, service)

    assert result.outcome is IssueOutcome.ISSUED
    assert acme_client.actions == ["update", "issue"]


def test_missing_account_file_fails(
    make_reconciler: Callable[..., Reconciler],
    acme_client: Any,
    tmp_path: Path,
) -> None:
    """Issuance is never attempted without an account on disk."""
    reconciler = make_reconciler()
    service = _service("a.example.com")
    plan = resolve_plan(service, reconciler.acme)
    account = AccountInfo(
        config_home=tmp_path / "acme" / "default",
        account_file=tmp_path / "acme" / "default" / "account.json",
        registration_needed=False,
    )

    result = reconciler.orchestrator.issue_or_renew(service, plan, account)

    assert result.outcome is IssueOutcome.FAILED
    assert "No ACME account file" in result.message
    assert acme_client.actions == []


def test_issue_failure_keeps_existing_aliases(
    make_reconciler: Callable[..., Reconciler],
    acme_client: Any,
    restarts: list[str],
) -> None:
    """A failed renewal leaves the previously issued certificate exposed."""
    reconciler = make_reconciler()
    service = _service("a.example.com", restart_on_renew=True)
    _issue(reconciler, service)
    restarts.clear()
    acme_client.issue_result = AcmeExit.FAILURE

    result = _issue(reconciler, service)

    assert result.outcome is IssueOutcome.FAILED
    assert result.reload_needed is False
    assert restarts == []
    assert reconciler.aliases.aliased_domains() == {"a.example.com"}


def test_incomplete_bundle_skips_alias(
    make_reconciler: Callable[..., Reconciler],
    acme_client: Any,
) -> None:
    """A bundle without its key is not aliased; the outcome is unchanged."""
    reconciler = make_reconciler()
    acme_client.issue_result = AcmeExit.RENEWAL_NOT_DUE

    result = _issue(reconciler, _service("a.example.com"))

    assert result.outcome is IssueOutcome.SKIPPED
    assert result.aliases == {"a.example.com": AliasResult.SKIPPED}
    assert reconciler.aliases.aliased_domains() == set()


def test_acme_client_error_is_contained(
    make_reconciler: Callable[..., Reconciler],
    acme_client: Any,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A missing client binary fails only the current service."""
    reconciler = make_reconciler()

    def broken_issue(params: object) -> AcmeExit:
        raise AcmeClientError("acme.sh not found")

    monkeypatch.setattr(acme_client, "issue", broken_issue)

    result = _issue(reconciler, _service("a.example.com"))

    assert result.outcome is IssueOutcome.FAILED
    assert result.message == "acme.sh not found"


def test_http_challenge_location_added_and_removed(
    make_reconciler: Callable[..., Reconciler],
    acme_client: Any,
    nginx_calls: list[tuple[str, ...]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Challenge locations exist only while the ACME client runs."""
    reconciler = make_reconciler(acme={"http_challenge_location": True})
    nginx = reconciler.nginx
    seen_during_issue: list[bool] = []
    original_issue = acme_client.issue

    def observing_issue(params: Any) -> AcmeExit:
        seen_during_issue.append(nginx.has_challenge_location("a.example.com"))
        return original_issue(params)

    monkeypatch.setattr(acme_client, "issue", observing_issue)

    result = _issue(reconciler, _service("a.example.com"))

    assert seen_during_issue == [True]
    assert not nginx.has_challenge_location("a.example.com")
    assert not nginx.vhost_path("a.example.com").exists()
    assert nginx_calls == [("-s", "reload")]
    assert result.reload_needed is True


def test_immediate_reload_when_not_deferred(
    make_reconciler: Callable[..., Reconciler],
    nginx_calls: list[tuple[str, ...]],
) -> None:
    """Without per-cycle coalescing the orchestrator reloads nginx itself."""
    reconciler = make_reconciler(proxy={"reload_per_cycle": False})

    result = _issue(reconciler, _service("a.example.com"))

    assert nginx_calls == [("-s", "reload")]
    assert result.reload_needed is False


def test_restart_failure_is_not_fatal(
    make_reconciler: Callable[..., Reconciler],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failing container restart is logged and the issuance still counts."""
    reconciler = make_reconciler()

    def failing_docker(self: ContainerProvider, command: str, *arguments: str, **kwargs: object) -> None:
        raise ContainerError("docker restart failed (exit 1): no such container")

    monkeypatch.setattr(ContainerProvider, "_docker", failing_docker)

    result = _issue(reconciler, _service("a.example.com", restart_on_renew=True))

    assert result.outcome is IssueOutcome.ISSUED
    assert result.restarted is False


def test_standalone_service_is_never_restarted(
    make_reconciler: Callable[..., Reconciler],
    restarts: list[str],
) -> None:
    """Standalone certificates have no container to restart."""
    reconciler = make_reconciler()

    result = _issue(reconciler, _service("a.example.com", standalone=True, restart_on_renew=True))

    assert result.outcome is IssueOutcome.ISSUED
    assert restarts == []
