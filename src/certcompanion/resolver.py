"""Resolve a declared service into an immutable issuance plan."""
from __future__ import annotations

import logging
from collections.abc import Mapping

from .config import KEY_SIZES, AcmeConfig
from .models import ChallengeType, IssuancePlan, Service, relative_cert_dir

LOGGER = logging.getLogger(__name__)


class PlanError(RuntimeError):
    """Raised when a service's settings cannot produce a valid plan."""


def resolve_plan(service: Service, acme: AcmeConfig) -> IssuancePlan:
    """Merge *service* overrides with the global *acme* defaults.

    Raises :class:`PlanError` for an unknown challenge type, a wildcard
    certificate requested over HTTP-01, or DNS-01 without a DNS API config.
    """
    overrides = service.overrides

    if overrides.test:
        ca_uri = acme.staging_ca_uri
    else:
        ca_uri = overrides.ca_uri or acme.ca_uri
    staging = acme.is_staging(ca_uri)

    challenge = _resolve_challenge(overrides.challenge or acme.challenge, service.id)
    if challenge is ChallengeType.HTTP01 and service.is_wildcard:
        raise PlanError(
            f"Service {service.id}: wildcard certificate {service.base_domain} "
            "cannot be validated with HTTP-01; use DNS-01."
        )

    dns_api_config: Mapping[str, str] | None = None
    if challenge is ChallengeType.DNS01:
        dns_api_config = overrides.dns_api_config or acme.dns_api_config
        if not dns_api_config:
            raise PlanError(
                f"Service {service.id}: DNS-01 selected but no DNS API configuration "
                "is set for the service or globally."
            )
        if not dns_api_config.get("DNS_API"):
            raise PlanError(f"Service {service.id}: DNS API configuration lacks a DNS_API key.")

    return IssuancePlan(
        service_id=service.id,
        domains=service.domains,
        challenge=challenge,
        key_size=resolve_key_size(overrides.key_size, acme.key_size, service.id),
        ocsp=acme.ocsp if overrides.ocsp is None else overrides.ocsp,
        preferred_chain=overrides.preferred_chain or acme.preferred_chain,
        pre_hook=overrides.pre_hook or acme.pre_hook,
        post_hook=overrides.post_hook or acme.post_hook,
        ca_uri=ca_uri,
        staging=staging,
        email=overrides.email or acme.email,
        wildcard=service.is_wildcard,
        cert_dir_name=relative_cert_dir(service.base_domain, staging=staging),
        restart_on_renew=overrides.restart_on_renew,
        dns_api_config=dns_api_config,
        eab_kid=overrides.eab_kid,
        eab_hmac_key=overrides.eab_hmac_key,
    )


def resolve_key_size(requested: str | None, default: str, service_id: str = "") -> str:
    """Return *requested* when it is a supported key size, otherwise *default*."""
    if requested and requested in KEY_SIZES:
        return requested
    if requested:
        LOGGER.warning(
            "Service %s: invalid key size %r, falling back to %s.", service_id, requested, default
        )
    return default


def _resolve_challenge(raw: str, service_id: str) -> ChallengeType:
    normalized = raw.strip().upper()
    for challenge in ChallengeType:
        if challenge.value == normalized:
            return challenge
    allowed = ", ".join(item.value for item in ChallengeType)
    raise PlanError(f"Service {service_id}: unknown ACME challenge {raw!r} (expected {allowed}).")


__all__ = ["PlanError", "resolve_key_size", "resolve_plan"]
