"""Load the declared service-to-domain mappings.

Two YAML documents feed each reconciliation cycle:

``services.yml``
    Rendered by the container runtime's metadata template (docker-gen or
    similar) and rewritten whenever containers come and go::

        services:
          - id: 3f2a9c1b
            domains: [a.example.com, b.example.com]
            email: ops@example.com
            restart_on_renew: true

``standalone.yml``
    Maintained by an operator for certificates that have no owning
    container. Same entry format under a ``standalone`` key.

Entries are returned as an ordered mapping keyed by service id, in
declaration order. Malformed entries are logged and skipped so that one bad
label never blocks the other services.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

import yaml

from .models import Service, ServiceOverrides

LOGGER = logging.getLogger(__name__)

_DOMAIN_SPLIT = re.compile(r"[\s,]+")
_OVERRIDE_KEYS = {
    "challenge",
    "key_size",
    "email",
    "ca_uri",
    "test",
    "eab_kid",
    "eab_hmac_key",
    "pre_hook",
    "post_hook",
    "preferred_chain",
    "ocsp",
    "restart_on_renew",
    "dns_api_config",
}
_ALLOWED_KEYS = {"id", "domains", *_OVERRIDE_KEYS}


class FeedError(RuntimeError):
    """Raised when a service feed file cannot be read."""


@dataclass(frozen=True)
class ServiceFeed:
    """Reader for the container and standalone service declarations."""

    services_file: Path
    standalone_file: Path | None = None

    def load(self) -> dict[str, Service]:
        """Return every declared service keyed by id, containers first."""
        services = self.load_containers()
        for service_id, service in self.load_standalone().items():
            if service_id in services:
                LOGGER.warning(
                    "Standalone service %s shadows a container with the same id; skipping it.",
                    service_id,
                )
                continue
            services[service_id] = service
        return services

    def load_containers(self) -> dict[str, Service]:
        """Return services declared by running containers."""
        return _load_entries(self.services_file, "services", standalone=False)

    def load_standalone(self) -> dict[str, Service]:
        """Return standalone services (no owning container)."""
        if self.standalone_file is None:
            return {}
        return _load_entries(self.standalone_file, "standalone", standalone=True)


def parse_service(entry: Mapping[str, object], *, standalone: bool = False) -> Service:
    """Build a :class:`Service` from one feed entry."""
    unknown = set(entry.keys()) - _ALLOWED_KEYS
    if unknown:
        joined = ", ".join(sorted(str(key) for key in unknown))
        raise ValueError(f"unknown keys: {joined}")

    service_id = str(entry.get("id") or "").strip()
    if not service_id:
        raise ValueError("missing id")

    domains = _parse_domains(entry.get("domains"))
    if not domains:
        raise ValueError("no domains declared")

    dns_raw = entry.get("dns_api_config")
    dns_api_config: Mapping[str, str] | None = None
    if dns_raw:
        if not isinstance(dns_raw, Mapping):
            raise ValueError("dns_api_config must be a mapping")
        dns_api_config = MappingProxyType({str(k): str(v) for k, v in dns_raw.items()})

    ocsp_raw = entry.get("ocsp")
    overrides = ServiceOverrides(
        challenge=_optional_str(entry.get("challenge")),
        key_size=_optional_str(entry.get("key_size")),
        email=_optional_str(entry.get("email")),
        ca_uri=_optional_str(entry.get("ca_uri")),
        test=_as_bool(entry.get("test")),
        eab_kid=_optional_str(entry.get("eab_kid")),
        eab_hmac_key=_optional_str(entry.get("eab_hmac_key")),
        pre_hook=_optional_str(entry.get("pre_hook")),
        post_hook=_optional_str(entry.get("post_hook")),
        preferred_chain=_optional_str(entry.get("preferred_chain")),
        ocsp=None if ocsp_raw is None else _as_bool(ocsp_raw),
        restart_on_renew=_as_bool(entry.get("restart_on_renew")),
        dns_api_config=dns_api_config,
    )
    return Service(id=service_id, domains=domains, overrides=overrides, standalone=standalone)


def _load_entries(path: Path, key: str, *, standalone: bool) -> dict[str, Service]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise FeedError(f"Failed to parse service feed {path}: {exc}") from exc
    except OSError as exc:
        raise FeedError(f"Failed to read service feed {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise FeedError(f"Service feed {path} must contain a mapping at the top level.")
    entries = data.get(key) or []
    if not isinstance(entries, list):
        raise FeedError(f"Service feed {path} must list entries under '{key}'.")

    services: dict[str, Service] = {}
    for index, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            LOGGER.warning("Ignoring %s[%d] in %s: not a mapping.", key, index, path)
            continue
        try:
            service = parse_service(entry, standalone=standalone)
        except ValueError as exc:
            LOGGER.warning("Ignoring %s[%d] in %s: %s.", key, index, path, exc)
            continue
        if service.id in services:
            LOGGER.warning("Ignoring duplicate service id %s in %s.", service.id, path)
            continue
        services[service.id] = service
    return services


def _parse_domains(raw: object) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        items = [item for item in _DOMAIN_SPLIT.split(raw) if item]
    elif isinstance(raw, list):
        items = [str(item).strip() for item in raw if str(item).strip()]
    else:
        raise ValueError("domains must be a list or a comma separated string")
    # Keep the first occurrence so the base domain stays put.
    ordered: dict[str, None] = {}
    for item in items:
        ordered.setdefault(item.lower(), None)
    return tuple(ordered)


def _optional_str(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_bool(value: object | None) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in {"true", "yes", "on", "1"}


__all__ = ["FeedError", "ServiceFeed", "parse_service"]
