"""Domain types shared across the reconciliation pipeline."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

WILDCARD_PREFIX = "*."
WILDCARD_DIR_PREFIX = "_wildcard_."
STAGING_DIR_PREFIX = "_test_"


class ChallengeType(Enum):
    """Proof-of-control methods supported for issuance."""

    HTTP01 = "HTTP-01"
    DNS01 = "DNS-01"


class IssueOutcome(Enum):
    """Classified result of one issuance attempt."""

    ISSUED = "issued"
    SKIPPED = "skipped"
    FAILED = "failed"


class AliasResult(Enum):
    """Result of ensuring the alias files for one domain."""

    CREATED = "created"
    ALREADY_CORRECT = "already-correct"
    SKIPPED = "skipped"


def is_wildcard(domain: str) -> bool:
    """Return True when *domain* carries the wildcard marker."""
    return domain.startswith(WILDCARD_PREFIX)


def strip_wildcard(domain: str) -> str:
    """Return *domain* without a leading wildcard marker."""
    if is_wildcard(domain):
        return domain[len(WILDCARD_PREFIX) :]
    return domain


def relative_cert_dir(base_domain: str, *, staging: bool) -> str:
    """Return the bundle directory name (relative to the cert dir) for *base_domain*."""
    if is_wildcard(base_domain):
        name = WILDCARD_DIR_PREFIX + strip_wildcard(base_domain)
    else:
        name = base_domain
    if staging:
        name = STAGING_DIR_PREFIX + name
    return name


@dataclass(frozen=True)
class ServiceOverrides:
    """Optional per-service settings; ``None`` means use the global default."""

    challenge: str | None = None
    key_size: str | None = None
    email: str | None = None
    ca_uri: str | None = None
    test: bool = False
    eab_kid: str | None = None
    eab_hmac_key: str | None = None
    pre_hook: str | None = None
    post_hook: str | None = None
    preferred_chain: str | None = None
    ocsp: bool | None = None
    restart_on_renew: bool = False
    dns_api_config: Mapping[str, str] | None = None


@dataclass(frozen=True)
class Service:
    """A declared service and the ordered domains it serves."""

    id: str
    domains: tuple[str, ...]
    overrides: ServiceOverrides = field(default_factory=ServiceOverrides)
    standalone: bool = False

    def __post_init__(self) -> None:
        """Reject services without domains."""
        if not self.domains:
            raise ValueError(f"Service {self.id!r} must declare at least one domain.")

    @property
    def base_domain(self) -> str:
        """Return the canonical (first) domain."""
        return self.domains[0]

    @property
    def is_wildcard(self) -> bool:
        """Return True when the base domain is a wildcard."""
        return is_wildcard(self.base_domain)


@dataclass(frozen=True)
class EABCredential:
    """External account binding credential pair."""

    kid: str
    hmac_key: str


@dataclass(frozen=True)
class IssuancePlan:
    """Immutable per-service issuance settings resolved against global defaults."""

    service_id: str
    domains: tuple[str, ...]
    challenge: ChallengeType
    key_size: str
    ocsp: bool
    preferred_chain: str | None
    pre_hook: str | None
    post_hook: str | None
    ca_uri: str
    staging: bool
    email: str | None
    wildcard: bool
    cert_dir_name: str
    restart_on_renew: bool = False
    dns_api_config: Mapping[str, str] | None = None
    eab_kid: str | None = None
    eab_hmac_key: str | None = None

    @property
    def base_domain(self) -> str:
        """Return the canonical (first) domain."""
        return self.domains[0]

    @property
    def is_ecc(self) -> bool:
        """Return True for elliptic-curve key sizes."""
        return self.key_size.startswith("ec-")


@dataclass(frozen=True)
class AccountInfo:
    """Resolved ACME account identity for one plan."""

    config_home: Path
    account_file: Path
    registration_needed: bool
    email: str | None = None
    eab: EABCredential | None = None
    update_email: bool = False


@dataclass(frozen=True)
class IssueResult:
    """Outcome of one service's issuance together with the side effects it flagged."""

    service_id: str
    outcome: IssueOutcome
    reload_needed: bool = False
    restarted: bool = False
    aliases: Mapping[str, AliasResult] = field(default_factory=dict)
    message: str = ""


__all__ = [
    "AccountInfo",
    "AliasResult",
    "ChallengeType",
    "EABCredential",
    "IssuancePlan",
    "IssueOutcome",
    "IssueResult",
    "STAGING_DIR_PREFIX",
    "Service",
    "ServiceOverrides",
    "WILDCARD_DIR_PREFIX",
    "WILDCARD_PREFIX",
    "is_wildcard",
    "relative_cert_dir",
    "strip_wildcard",
]
