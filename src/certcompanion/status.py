"""Report the managed certificate bundles and their validity windows."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509

from .aliases import AliasStore
from .models import STAGING_DIR_PREFIX, WILDCARD_DIR_PREFIX


@dataclass(frozen=True)
class BundleStatus:
    """Status of one managed certificate bundle."""

    name: str
    domains: tuple[str, ...]
    not_valid_before: datetime | None = None
    not_valid_after: datetime | None = None
    subject_names: tuple[str, ...] = ()
    error: str | None = None

    @property
    def staging(self) -> bool:
        """Return True for bundles issued by a staging CA."""
        return self.name.startswith(STAGING_DIR_PREFIX)

    @property
    def wildcard(self) -> bool:
        """Return True for wildcard bundles."""
        return self.name.removeprefix(STAGING_DIR_PREFIX).startswith(WILDCARD_DIR_PREFIX)

    def days_remaining(self, now: datetime | None = None) -> int | None:
        """Return whole days until expiry, or None when unknown."""
        if self.not_valid_after is None:
            return None
        now = now or datetime.now(UTC)
        return (self.not_valid_after - now).days

    def to_dict(self, now: datetime | None = None) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "domains": list(self.domains),
            "subject_names": list(self.subject_names),
            "staging": self.staging,
            "wildcard": self.wildcard,
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": self.not_valid_after.isoformat() if self.not_valid_after else None,
            "days_remaining": self.days_remaining(now),
            "error": self.error,
        }


def collect_status(aliases: AliasStore) -> list[BundleStatus]:
    """Inspect every managed bundle below the alias store's certificate directory."""
    by_bundle: dict[str, list[str]] = {}
    for domain in sorted(aliases.aliased_domains()):
        bundle = aliases.bundle_for_alias(domain)
        if bundle is not None:
            by_bundle.setdefault(bundle, []).append(domain)

    statuses: list[BundleStatus] = []
    for name in aliases.managed_bundles():
        domains = tuple(by_bundle.get(name, ()))
        cert_path = aliases.bundle_dir(name) / "cert.pem"
        if not cert_path.is_file():
            statuses.append(BundleStatus(name=name, domains=domains, error="cert.pem missing"))
            continue
        try:
            cert = _load_certificate(cert_path)
        except ValueError as exc:
            statuses.append(BundleStatus(name=name, domains=domains, error=f"unreadable: {exc}"))
            continue
        statuses.append(
            BundleStatus(
                name=name,
                domains=domains,
                not_valid_before=cert.not_valid_before_utc,
                not_valid_after=cert.not_valid_after_utc,
                subject_names=_subject_names(cert),
            )
        )
    return statuses


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _subject_names(cert: x509.Certificate) -> tuple[str, ...]:
    try:
        extension = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return ()
    return tuple(extension.value.get_values_for_type(x509.DNSName))


__all__ = ["BundleStatus", "collect_status"]
