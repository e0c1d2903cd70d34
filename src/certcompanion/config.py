"""Configuration loader for certcompanion.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/certcompanion/config.yml`` (or an override path).
3. Environment variables prefixed with ``CERTCOMPANION_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CERTCOMPANION_UPDATE_INTERVAL=1800
    export CERTCOMPANION_ACME__KEY_SIZE=ec-256
    export CERTCOMPANION_ACME__DNS_API_CONFIG__DNS_API=dns_cf

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and handed to every component explicitly; nothing downstream
reads the environment.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load certcompanion configuration. Install with "
        "`pip install certcompanion` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "CERTCOMPANION_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

LETSENCRYPT_PRODUCTION_URI = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING_URI = "https://acme-staging-v02.api.letsencrypt.org/directory"
ZEROSSL_CA_URI = "https://acme.zerossl.com/v2/DV90"

KEY_SIZES = ("2048", "3072", "4096", "ec-256", "ec-384")
CHALLENGE_TYPES = ("HTTP-01", "DNS-01")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class AcmeConfig:
    """Global ACME defaults applied to every service unless overridden."""

    ca_uri: str = LETSENCRYPT_PRODUCTION_URI
    staging_ca_uri: str = LETSENCRYPT_STAGING_URI
    staging_pattern: str = r"^https://acme-staging"
    client_bin: str = "acme.sh"
    challenge: str = "HTTP-01"
    key_size: str = "4096"
    renew_days: int = 60
    renew_private_keys: bool = True
    email: str | None = None
    eab_kid: str | None = None
    eab_hmac_key: str | None = None
    zerossl_api_key: str | None = None
    ca_bundle: Path | None = None
    pre_hook: str | None = None
    post_hook: str | None = None
    ocsp: bool = False
    preferred_chain: str | None = None
    dns_api_config: Mapping[str, str] | None = None
    http_challenge_location: bool = False
    debug: bool = False
    webroot: Path = Path("/usr/share/nginx/html")

    def is_staging(self, ca_uri: str) -> bool:
        """Return True when *ca_uri* points at a staging/test CA."""
        return re.search(self.staging_pattern, ca_uri) is not None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (secrets masked)."""
        return {
            "ca_uri": self.ca_uri,
            "staging_ca_uri": self.staging_ca_uri,
            "staging_pattern": self.staging_pattern,
            "client_bin": self.client_bin,
            "challenge": self.challenge,
            "key_size": self.key_size,
            "renew_days": self.renew_days,
            "renew_private_keys": self.renew_private_keys,
            "email": self.email,
            "eab_kid": self.eab_kid,
            "eab_hmac_key": "***" if self.eab_hmac_key else None,
            "zerossl_api_key": "***" if self.zerossl_api_key else None,
            "ca_bundle": str(self.ca_bundle) if self.ca_bundle else None,
            "pre_hook": self.pre_hook,
            "post_hook": self.post_hook,
            "ocsp": self.ocsp,
            "preferred_chain": self.preferred_chain,
            "dns_api": (self.dns_api_config or {}).get("DNS_API"),
            "http_challenge_location": self.http_challenge_location,
            "debug": self.debug,
            "webroot": str(self.webroot),
        }


@dataclass(frozen=True)
class ProxyConfig:
    """Paths and binaries for the nginx reverse proxy collaborator."""

    nginx_bin: str = "nginx"
    pid_file: Path = Path("/run/nginx.pid")
    vhost_dir: Path = Path("/etc/nginx/vhost.d")
    conf_dir: Path = Path("/etc/nginx/conf.d")
    reload_per_cycle: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "nginx_bin": self.nginx_bin,
            "pid_file": str(self.pid_file),
            "vhost_dir": str(self.vhost_dir),
            "conf_dir": str(self.conf_dir),
            "reload_per_cycle": self.reload_per_cycle,
        }


@dataclass(frozen=True)
class RuntimeConfig:
    """Container runtime used to restart services after renewal."""

    docker_bin: str = "docker"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"docker_bin": self.docker_bin}


@dataclass(frozen=True)
class FilesConfig:
    """Ownership and modes enforced on certificate material."""

    owner: str | None = None
    group: str | None = None
    file_mode: int = 0o644
    key_mode: int = 0o600
    folder_mode: int = 0o755

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "owner": self.owner,
            "group": self.group,
            "file_mode": f"{self.file_mode:04o}",
            "key_mode": f"{self.key_mode:04o}",
            "folder_mode": f"{self.folder_mode:04o}",
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for certcompanion."""

    config_file: Path
    cert_dir: Path
    acme_home: Path
    logs_dir: Path
    templates_dir: Path
    services_file: Path
    standalone_file: Path
    update_interval: float
    acme: AcmeConfig = field(default_factory=AcmeConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    files: FilesConfig = field(default_factory=FilesConfig)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "cert_dir": str(self.cert_dir),
            "acme_home": str(self.acme_home),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "services_file": str(self.services_file),
            "standalone_file": str(self.standalone_file),
            "update_interval": self.update_interval,
            "acme": self.acme.to_dict(),
            "proxy": self.proxy.to_dict(),
            "runtime": self.runtime.to_dict(),
            "files": self.files.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/certcompanion/config.yml",
    "cert_dir": "/etc/nginx/certs",
    "acme_home": "/etc/acme.sh",
    "logs_dir": "/var/log/certcompanion",
    "templates_dir": "/etc/certcompanion/templates",
    "services_file": "/etc/certcompanion/services.yml",
    "standalone_file": "/etc/certcompanion/standalone.yml",
    "update_interval": 3600,
    "acme": {
        "ca_uri": LETSENCRYPT_PRODUCTION_URI,
        "staging_ca_uri": LETSENCRYPT_STAGING_URI,
        "staging_pattern": r"^https://acme-staging",
        "client_bin": "acme.sh",
        "challenge": "HTTP-01",
        "key_size": "4096",
        "renew_days": 60,
        "renew_private_keys": True,
        "email": None,
        "eab_kid": None,
        "eab_hmac_key": None,
        "zerossl_api_key": None,
        "ca_bundle": None,
        "pre_hook": None,
        "post_hook": None,
        "ocsp": False,
        "preferred_chain": None,
        "dns_api_config": None,
        "http_challenge_location": False,
        "debug": False,
        "webroot": "/usr/share/nginx/html",
    },
    "proxy": {
        "nginx_bin": "nginx",
        "pid_file": "/run/nginx.pid",
        "vhost_dir": "/etc/nginx/vhost.d",
        "conf_dir": "/etc/nginx/conf.d",
        "reload_per_cycle": True,
    },
    "runtime": {
        "docker_bin": "docker",
    },
    "files": {
        "owner": None,
        "group": None,
        "file_mode": "0644",
        "key_mode": "0600",
        "folder_mode": "0755",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_NESTED_SECTIONS = ("acme", "proxy", "runtime", "files")


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section in _NESTED_SECTIONS:
        allowed = set(_as_dict(DEFAULTS[section], section).keys())
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    acme_map = _as_dict(raw.get("acme"), "acme")
    challenge = acme_map.get("challenge")
    if challenge is not None and str(challenge) not in CHALLENGE_TYPES:
        allowed = ", ".join(CHALLENGE_TYPES)
        raise ConfigError(f"Unsupported ACME challenge '{challenge}'. Allowed: {allowed}.")

    dns_config = acme_map.get("dns_api_config")
    if dns_config is not None:
        dns_map = _as_dict(dns_config, "acme.dns_api_config")
        if dns_map and "DNS_API" not in dns_map:
            raise ConfigError("acme.dns_api_config must define a DNS_API key.")

    pattern = acme_map.get("staging_pattern")
    if pattern is not None:
        try:
            re.compile(str(pattern))
        except re.error as exc:
            raise ConfigError(f"Invalid regular expression for acme.staging_pattern: {exc}.") from exc


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    acme_mapping = _as_dict(raw.get("acme"), "acme")
    default_acme = AcmeConfig()

    renew_days = _expect_int(acme_mapping.get("renew_days"), "acme.renew_days", default=60)
    if renew_days <= 0:
        raise ConfigError("acme.renew_days must be greater than zero.")

    key_size = _optional_str(acme_mapping.get("key_size")) or default_acme.key_size
    if key_size not in KEY_SIZES:
        allowed = ", ".join(KEY_SIZES)
        raise ConfigError(f"Unsupported acme.key_size '{key_size}'. Allowed: {allowed}.")

    dns_raw = acme_mapping.get("dns_api_config")
    dns_api_config: Mapping[str, str] | None = None
    if dns_raw:
        dns_api_config = MappingProxyType(
            {key: str(value) for key, value in _as_dict(dns_raw, "acme.dns_api_config").items()}
        )

    ca_bundle_value = acme_mapping.get("ca_bundle")
    acme = AcmeConfig(
        ca_uri=_optional_str(acme_mapping.get("ca_uri")) or default_acme.ca_uri,
        staging_ca_uri=(
            _optional_str(acme_mapping.get("staging_ca_uri")) or default_acme.staging_ca_uri
        ),
        staging_pattern=(
            _optional_str(acme_mapping.get("staging_pattern")) or default_acme.staging_pattern
        ),
        client_bin=_optional_str(acme_mapping.get("client_bin")) or default_acme.client_bin,
        challenge=_optional_str(acme_mapping.get("challenge")) or default_acme.challenge,
        key_size=key_size,
        renew_days=renew_days,
        renew_private_keys=_expect_bool(
            acme_mapping.get("renew_private_keys"), "acme.renew_private_keys", default=True
        ),
        email=_optional_str(acme_mapping.get("email")),
        eab_kid=_optional_str(acme_mapping.get("eab_kid")),
        eab_hmac_key=_optional_str(acme_mapping.get("eab_hmac_key")),
        zerossl_api_key=_optional_str(acme_mapping.get("zerossl_api_key")),
        ca_bundle=_to_path(ca_bundle_value) if ca_bundle_value else None,
        pre_hook=_optional_str(acme_mapping.get("pre_hook")),
        post_hook=_optional_str(acme_mapping.get("post_hook")),
        ocsp=_expect_bool(acme_mapping.get("ocsp"), "acme.ocsp", default=False),
        preferred_chain=_optional_str(acme_mapping.get("preferred_chain")),
        dns_api_config=dns_api_config,
        http_challenge_location=_expect_bool(
            acme_mapping.get("http_challenge_location"),
            "acme.http_challenge_location",
            default=False,
        ),
        debug=_expect_bool(acme_mapping.get("debug"), "acme.debug", default=False),
        webroot=_to_path(acme_mapping.get("webroot", "/usr/share/nginx/html")),
    )

    proxy_mapping = _as_dict(raw.get("proxy"), "proxy")
    proxy = ProxyConfig(
        nginx_bin=str(proxy_mapping.get("nginx_bin", "nginx")),
        pid_file=_to_path(proxy_mapping.get("pid_file", "/run/nginx.pid")),
        vhost_dir=_to_path(proxy_mapping.get("vhost_dir", "/etc/nginx/vhost.d")),
        conf_dir=_to_path(proxy_mapping.get("conf_dir", "/etc/nginx/conf.d")),
        reload_per_cycle=_expect_bool(
            proxy_mapping.get("reload_per_cycle"), "proxy.reload_per_cycle", default=True
        ),
    )

    runtime_mapping = _as_dict(raw.get("runtime"), "runtime")
    runtime = RuntimeConfig(docker_bin=str(runtime_mapping.get("docker_bin", "docker")))

    files_mapping = _as_dict(raw.get("files"), "files")
    files = FilesConfig(
        owner=_optional_str(files_mapping.get("owner")),
        group=_optional_str(files_mapping.get("group")),
        file_mode=_parse_permission_mode(files_mapping.get("file_mode", "0644"), "files.file_mode"),
        key_mode=_parse_permission_mode(files_mapping.get("key_mode", "0600"), "files.key_mode"),
        folder_mode=_parse_permission_mode(
            files_mapping.get("folder_mode", "0755"), "files.folder_mode"
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        cert_dir=_to_path(raw.get("cert_dir")),
        acme_home=_to_path(raw.get("acme_home")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        services_file=_to_path(raw.get("services_file")),
        standalone_file=_to_path(raw.get("standalone_file")),
        update_interval=_expect_positive_float(
            raw.get("update_interval"), "update_interval", default=3600.0
        ),
        acme=acme,
        proxy=proxy,
        runtime=runtime,
        files=files,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        # DNS provider variables keep their case (acme.sh reads them verbatim).
        if path_segments[:2] == ["acme", "dns_api_config"] and len(path_segments) == 3:
            path_segments[2] = suffix.split("__")[-1]
            _assign_nested(overrides, path_segments, value.strip())
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _parse_permission_mode(value: object, label: str) -> int:
    if value is None:
        raise ConfigError(f"{label} must be specified.")
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an octal integer string. Got boolean {value!r}.")
    if isinstance(value, int):
        mode = value
    elif isinstance(value, str):
        text = value.strip().lower()
        if not text:
            raise ConfigError(f"{label} must be an octal integer string.")
        if text.startswith("0o"):
            text = text[2:]
        try:
            mode = int(text, 8)
        except ValueError as exc:
            raise ConfigError(f"{label} must be an octal integer string.") from exc
    else:
        raise ConfigError(f"{label} must be an octal integer or string.")
    if mode < 0 or mode > 0o777:
        raise ConfigError(f"{label} must be between 0000 and 0777 inclusive.")
    return mode


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0", ""}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AcmeConfig",
    "AppConfig",
    "CHALLENGE_TYPES",
    "ConfigError",
    "FilesConfig",
    "KEY_SIZES",
    "LETSENCRYPT_PRODUCTION_URI",
    "LETSENCRYPT_STAGING_URI",
    "ProxyConfig",
    "RuntimeConfig",
    "ZEROSSL_CA_URI",
    "load_config",
]
