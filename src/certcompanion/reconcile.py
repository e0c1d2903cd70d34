"""One full reconciliation pass over every declared service."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from .accounts import AccountError, AccountManager
from .aliases import AliasStore
from .config import AcmeConfig
from .issuance import IssuanceOrchestrator
from .logging import OperationScope, StructuredLogger
from .models import IssueOutcome, IssueResult, Service, strip_wildcard
from .providers.nginx import NginxError, NginxProvider
from .resolver import PlanError, resolve_plan
from .services import FeedError, ServiceFeed

LOGGER = logging.getLogger(__name__)

PROXY_DOWN_REASON = "nginx is not running"


@dataclass(slots=True)
class CycleReport:
    """Summary of one reconciliation pass."""

    skipped: bool = False
    reason: str = ""
    results: list[IssueResult] = field(default_factory=list)
    aliases_removed: int = 0
    standalone_removed: int = 0
    reloaded: bool = False

    def count(self, outcome: IssueOutcome) -> int:
        """Return how many services ended with *outcome*."""
        return sum(1 for result in self.results if result.outcome is outcome)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary."""
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "issued": self.count(IssueOutcome.ISSUED),
            "renewal_skipped": self.count(IssueOutcome.SKIPPED),
            "failed": self.count(IssueOutcome.FAILED),
            "aliases_removed": self.aliases_removed,
            "standalone_removed": self.standalone_removed,
            "reloaded": self.reloaded,
        }


@dataclass(slots=True)
class Reconciler:
    """Iterate declared services, issue certificates and prune stale aliases."""

    acme: AcmeConfig
    feed: ServiceFeed
    accounts: AccountManager
    orchestrator: IssuanceOrchestrator
    aliases: AliasStore
    nginx: NginxProvider
    logger: StructuredLogger

    def run_cycle(self, *, force_renew: bool = False) -> CycleReport:
        """Run one pass; the proxy is reloaded at most once at the end."""
        report = CycleReport()
        with self.logger.operation(
            "reconcile cycle",
            args={"force_renew": force_renew},
            target={"kind": "cycle"},
        ) as op:
            if not self.nginx.is_running():
                report.skipped = True
                report.reason = PROXY_DOWN_REASON
                LOGGER.info("Skipping reconciliation cycle: %s.", report.reason)
                op.warning("Reconciliation skipped.", warnings=[report.reason], changed=0)
                return report

            try:
                services = self.feed.load()
            except FeedError as exc:
                report.skipped = True
                report.reason = str(exc)
                LOGGER.error("Skipping reconciliation cycle: %s", exc)
                op.error("Service feed unreadable.", errors=[str(exc)])
                return report

            self._provision_standalone(services, op)

            reload_needed = False
            for service in services.values():
                result = self.process_service(service, force_renew=force_renew, op=op)
                report.results.append(result)
                reload_needed = reload_needed or result.reload_needed

            report.aliases_removed = self.cleanup(services, op=op)
            report.standalone_removed = self.cleanup_standalone(services, op=op)

            if reload_needed or report.aliases_removed or report.standalone_removed:
                report.reloaded = self._reload(op)

            summary = report.to_dict()
            changed = (
                report.count(IssueOutcome.ISSUED) + report.aliases_removed + report.standalone_removed
            )
            failures = [
                f"{result.service_id}: {result.message}"
                for result in report.results
                if result.outcome is IssueOutcome.FAILED
            ]
            if failures:
                op.warning(
                    "Reconciliation finished with failures.",
                    warnings=failures,
                    changed=changed,
                    context=summary,
                )
            else:
                op.success("Reconciliation finished.", changed=changed, context=summary)
        return report

    def process_service(
        self,
        service: Service,
        *,
        force_renew: bool = False,
        op: OperationScope | None = None,
    ) -> IssueResult:
        """Resolve, authenticate and issue for a single service."""
        try:
            plan = resolve_plan(service, self.acme)
            if op is not None:
                op.add_step(f"service.{service.id}.plan", detail=plan.cert_dir_name)
            account = self.accounts.resolve(plan)
        except (PlanError, AccountError) as exc:
            LOGGER.error("%s", exc)
            if op is not None:
                op.add_step(f"service.{service.id}.plan", status="error", detail=str(exc))
            return IssueResult(service_id=service.id, outcome=IssueOutcome.FAILED, message=str(exc))
        return self.orchestrator.issue_or_renew(
            service, plan, account, force_renew=force_renew, op=op
        )

    def cleanup(self, services: Mapping[str, Service], *, op: OperationScope | None = None) -> int:
        """Remove aliases of managed bundles whose domains are no longer declared."""
        declared = [domain for service in services.values() for domain in service.domains]
        removed = self.aliases.reconcile(declared)
        if op is not None and removed:
            op.add_step("aliases.cleanup", detail={"removed": removed})
        return removed

    def cleanup_standalone(
        self, services: Mapping[str, Service], *, op: OperationScope | None = None
    ) -> int:
        """Remove standalone server blocks for services that are no longer declared."""
        declared = {
            strip_wildcard(service.base_domain) for service in services.values() if service.standalone
        }
        removed = 0
        for domain in self.nginx.standalone_confs():
            if domain in declared:
                continue
            if self.nginx.remove_standalone(domain):
                removed += 1
                if op is not None:
                    op.add_step(f"standalone.{domain}.remove")
        return removed

    def prune(self) -> CycleReport:
        """Run only the cleanup half of a cycle; no certificates are requested."""
        report = CycleReport()
        with self.logger.operation("cleanup", target={"kind": "aliases"}) as op:
            try:
                services = self.feed.load()
            except FeedError as exc:
                report.skipped = True
                report.reason = str(exc)
                op.error("Service feed unreadable.", errors=[str(exc)])
                return report

            report.aliases_removed = self.cleanup(services, op=op)
            report.standalone_removed = self.cleanup_standalone(services, op=op)
            changed = report.aliases_removed + report.standalone_removed
            if changed and self.nginx.is_running():
                report.reloaded = self._reload(op)
            op.success("Cleanup finished.", changed=changed, context=report.to_dict())
        return report

    # ------------------------------------------------------------------
    def _provision_standalone(self, services: Mapping[str, Service], op: OperationScope) -> None:
        changed = False
        for service in services.values():
            if not service.standalone:
                continue
            try:
                if self.nginx.render_standalone(service.id, service.domains):
                    changed = True
                    op.add_step(f"standalone.{service.id}.render", detail=service.base_domain)
            except NginxError as exc:
                LOGGER.error("Standalone %s: nginx rejected the server block: %s", service.id, exc)
                op.add_step(f"standalone.{service.id}.render", status="error", detail=str(exc))
        if changed:
            self._reload(op)

    def _reload(self, op: OperationScope) -> bool:
        try:
            self.nginx.reload()
        except NginxError as exc:
            LOGGER.error("nginx reload failed: %s", exc)
            op.add_step("nginx.reload", status="error", detail=str(exc))
            return False
        op.add_step("nginx.reload")
        return True


__all__ = ["CycleReport", "PROXY_DOWN_REASON", "Reconciler"]
