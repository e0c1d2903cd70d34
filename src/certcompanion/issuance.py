"""Drive one service's certificate through registration, issuance and aliasing."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from jinja2 import TemplateError

from . import __version__
from .aliases import AliasStore
from .config import AppConfig
from .logging import OperationScope
from .models import (
    AccountInfo,
    AliasResult,
    ChallengeType,
    IssuancePlan,
    IssueOutcome,
    IssueResult,
    Service,
)
from .providers.acme import (
    AccountParams,
    AcmeClient,
    AcmeClientError,
    AcmeCommonParams,
    AcmeExit,
    IssueParams,
)
from .providers.containers import ContainerError, ContainerProvider
from .providers.nginx import NginxError, NginxProvider

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _Progress:
    outcome: IssueOutcome = IssueOutcome.FAILED
    message: str = ""
    reload_needed: bool = False
    restart_needed: bool = False
    restarted: bool = False
    challenge_domains: list[str] = field(default_factory=list)
    aliases: dict[str, AliasResult] = field(default_factory=dict)


@dataclass(slots=True)
class IssuanceOrchestrator:
    """Issue or renew the certificate for one service and apply side effects."""

    config: AppConfig
    acme_client: AcmeClient
    aliases: AliasStore
    nginx: NginxProvider
    containers: ContainerProvider
    defer_reload: bool = True

    @property
    def user_agent(self) -> str:
        """Return the user agent advertised to the CA."""
        return f"certcompanion/{__version__} ({self.config.acme.client_bin})"

    def issue_or_renew(
        self,
        service: Service,
        plan: IssuancePlan,
        account: AccountInfo,
        *,
        force_renew: bool = False,
        op: OperationScope | None = None,
    ) -> IssueResult:
        """Run the issuance sequence for *service* and classify the outcome.

        Failures are reported through the returned :class:`IssueResult`; the
        service's existing aliases are left in place.
        """
        progress = _Progress()
        try:
            self._issue(plan, account, progress, force_renew=force_renew, op=op)
        except (AcmeClientError, NginxError, TemplateError, OSError) as exc:
            progress.outcome = IssueOutcome.FAILED
            progress.message = str(exc)
            LOGGER.error("Service %s: %s", service.id, exc)
        finally:
            self._post_issue(service, plan, progress, op=op)

        _step(
            op,
            f"service.{service.id}.outcome",
            "error" if progress.outcome is IssueOutcome.FAILED else "success",
            progress.outcome.value,
        )
        return IssueResult(
            service_id=service.id,
            outcome=progress.outcome,
            reload_needed=progress.reload_needed,
            restarted=progress.restarted,
            aliases=dict(progress.aliases),
            message=progress.message,
        )

    # ------------------------------------------------------------------
    def _issue(
        self,
        plan: IssuancePlan,
        account: AccountInfo,
        progress: _Progress,
        *,
        force_renew: bool,
        op: OperationScope | None,
    ) -> None:
        bundle_dir = self.aliases.bundle_dir(plan.cert_dir_name)
        bundle_dir.mkdir(parents=True, exist_ok=True)

        common = AcmeCommonParams(
            config_home=account.config_home,
            server=plan.ca_uri,
            user_agent=self.user_agent,
            ca_bundle=self.config.acme.ca_bundle,
            debug=self.config.acme.debug,
        )
        account_params = AccountParams(common=common, email=account.email, eab=account.eab)

        if account.registration_needed:
            LOGGER.info("Service %s: registering ACME account at %s.", plan.service_id, plan.ca_uri)
            if not self.acme_client.register_account(account_params).ok:
                progress.message = "ACME account registration failed."
                LOGGER.error("Service %s: %s", plan.service_id, progress.message)
                _step(op, f"service.{plan.service_id}.account", "error", progress.message)
                return
            _step(op, f"service.{plan.service_id}.account", "success", "registered")

        if account.update_email:
            if self.acme_client.update_account(account_params).ok:
                _step(op, f"service.{plan.service_id}.account", "success", "email updated")
            else:
                LOGGER.warning(
                    "Service %s: updating the ACME account email failed; issuing anyway.",
                    plan.service_id,
                )
                _step(op, f"service.{plan.service_id}.account", "warning", "email update failed")

        if not account.account_file.exists():
            progress.message = f"No ACME account file at {account.account_file}."
            LOGGER.error("Service %s: %s", plan.service_id, progress.message)
            _step(op, f"service.{plan.service_id}.account", "error", progress.message)
            return

        if plan.challenge is ChallengeType.HTTP01 and self.config.acme.http_challenge_location:
            for domain in plan.domains:
                if self.nginx.add_challenge_location(domain):
                    progress.challenge_domains.append(domain)
            if progress.challenge_domains:
                self._reload(plan.service_id, "challenge locations")

        result = self.acme_client.issue(
            IssueParams(
                common=common,
                domains=plan.domains,
                key_size=plan.key_size,
                cert_file=bundle_dir / "cert.pem",
                key_file=bundle_dir / "key.pem",
                ca_file=bundle_dir / "chain.pem",
                fullchain_file=bundle_dir / "fullchain.pem",
                days=self.config.acme.renew_days,
                ocsp=plan.ocsp,
                preferred_chain=plan.preferred_chain,
                pre_hook=plan.pre_hook,
                post_hook=plan.post_hook,
                force=force_renew,
                renew_private_key=self.config.acme.renew_private_keys,
                webroot=self.config.acme.webroot if plan.challenge is ChallengeType.HTTP01 else None,
                dns_api_config=plan.dns_api_config,
            )
        )
        if result is AcmeExit.FAILURE:
            progress.message = "ACME issuance failed."
            LOGGER.error("Service %s: certificate issuance for %s failed.", plan.service_id, plan.base_domain)
            _step(op, f"service.{plan.service_id}.issue", "error", progress.message)
            return
        _step(op, f"service.{plan.service_id}.issue", "success", result.value)

        for domain in plan.domains:
            alias_result = self.aliases.ensure_alias(plan.cert_dir_name, domain)
            progress.aliases[domain] = alias_result
            if alias_result is AliasResult.CREATED:
                progress.reload_needed = True
                progress.restart_needed = True
            _step(
                op,
                f"service.{plan.service_id}.alias.{domain}",
                "error" if alias_result is AliasResult.SKIPPED else "success",
                alias_result.value,
            )

        self.aliases.write_marker(plan.cert_dir_name)
        self.aliases.normalize_bundle(plan.cert_dir_name)
        client_dir = account.config_home / (
            f"{plan.base_domain}_ecc" if plan.is_ecc else plan.base_domain
        )
        self.aliases.normalize_file(client_dir / f"{plan.base_domain}.key", private=True)

        if result is AcmeExit.SUCCESS:
            progress.outcome = IssueOutcome.ISSUED
            progress.message = "Certificate issued."
            progress.reload_needed = True
            progress.restart_needed = True
            LOGGER.info("Service %s: certificate issued for %s.", plan.service_id, ", ".join(plan.domains))
        else:
            progress.outcome = IssueOutcome.SKIPPED
            progress.message = "Renewal not yet due."

    def _post_issue(
        self,
        service: Service,
        plan: IssuancePlan,
        progress: _Progress,
        *,
        op: OperationScope | None,
    ) -> None:
        if plan.restart_on_renew and progress.restart_needed and not service.standalone:
            try:
                self.containers.restart(service.id)
                progress.restarted = True
                _step(op, f"service.{service.id}.restart", "success", None)
            except ContainerError as exc:
                LOGGER.error("Service %s: restart failed: %s", service.id, exc)
                _step(op, f"service.{service.id}.restart", "error", str(exc))

        for domain in progress.challenge_domains:
            try:
                if self.nginx.remove_challenge_location(domain):
                    progress.reload_needed = True
            except OSError as exc:
                LOGGER.error(
                    "Service %s: removing challenge location for %s failed: %s",
                    service.id,
                    domain,
                    exc,
                )
                _step(op, f"service.{service.id}.challenge.{domain}", "error", str(exc))

        if progress.reload_needed and not self.defer_reload:
            if self._reload(service.id, "certificate changes"):
                progress.reload_needed = False

    def _reload(self, service_id: str, reason: str) -> bool:
        try:
            self.nginx.reload()
        except NginxError as exc:
            LOGGER.warning("Service %s: nginx reload for %s failed: %s", service_id, reason, exc)
            return False
        return True


def _step(op: OperationScope | None, name: str, status: str, detail: object) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = ["IssuanceOrchestrator"]
