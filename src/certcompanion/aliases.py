"""Filesystem aliases that expose certificate bundles to the proxy.

The certificate directory holds one sub-directory (bundle) per certificate
plus flat per-domain symlinks that nginx picks up by name::

    /etc/nginx/certs/
        a.example.com/           cert.pem key.pem chain.pem fullchain.pem .companion
        a.example.com.crt        -> ./a.example.com/fullchain.pem
        a.example.com.key        -> ./a.example.com/key.pem
        a.example.com.chain.pem  -> ./a.example.com/chain.pem
        a.example.com.dhparam.pem -> ./dhparam.pem
        dhparam.pem

Only bundles carrying the ``.companion`` marker are considered managed;
manually placed certificates are never removed.
"""
from __future__ import annotations

import grp
import logging
import os
import pwd
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from . import __version__
from .config import FilesConfig
from .models import AliasResult, strip_wildcard

LOGGER = logging.getLogger(__name__)

MARKER_FILE = ".companion"
DHPARAM_FILE = "dhparam.pem"
DEFAULT_ALIAS = "default"
ALIAS_EXTENSIONS = (".crt", ".key", ".chain.pem", ".dhparam.pem")
BUNDLE_FILES = ("cert.pem", "key.pem", "chain.pem", "fullchain.pem")


@dataclass(slots=True)
class AliasStore:
    """Create, verify and prune per-domain certificate aliases."""

    cert_dir: Path
    files: FilesConfig = field(default_factory=FilesConfig)

    # Bundles ------------------------------------------------------------
    def bundle_dir(self, bundle: str) -> Path:
        """Return the absolute path of *bundle*."""
        return self.cert_dir / bundle

    def bundle_complete(self, bundle: str) -> bool:
        """Return True when the bundle has both leaf certificate and key."""
        path = self.bundle_dir(bundle)
        return (path / "cert.pem").is_file() and (path / "key.pem").is_file()

    def write_marker(self, bundle: str) -> Path:
        """Record that *bundle* is managed by this version of certcompanion."""
        path = self.bundle_dir(bundle)
        path.mkdir(parents=True, exist_ok=True)
        marker = path / MARKER_FILE
        marker.write_text(f"{__version__}\n", encoding="utf-8")
        return marker

    def managed_bundles(self) -> list[str]:
        """Return the names of bundles that carry the marker file."""
        if not self.cert_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.cert_dir.iterdir()
            if entry.is_dir() and not entry.is_symlink() and (entry / MARKER_FILE).exists()
        )

    def normalize_bundle(self, bundle: str) -> None:
        """Apply configured ownership and modes to every file in *bundle*."""
        path = self.bundle_dir(bundle)
        if not path.is_dir():
            return
        self._apply(path, self.files.folder_mode)
        for name in (*BUNDLE_FILES, MARKER_FILE):
            file_path = path / name
            if file_path.is_file():
                mode = self.files.key_mode if name == "key.pem" else self.files.file_mode
                self._apply(file_path, mode)

    def normalize_file(self, path: Path, *, private: bool = False) -> None:
        """Apply configured ownership and mode to a single file."""
        if path.is_file():
            self._apply(path, self.files.key_mode if private else self.files.file_mode)

    # Aliases ------------------------------------------------------------
    def ensure_alias(self, bundle: str, domain: str) -> AliasResult:
        """Point the aliases for *domain* at *bundle*.

        ``.crt`` and ``.key`` are mandatory; ``.chain.pem`` and the shared
        ``.dhparam.pem`` are linked when their targets exist.
        """
        if not self.bundle_complete(bundle):
            LOGGER.warning(
                "Bundle %s is missing cert.pem or key.pem; not aliasing %s.", bundle, domain
            )
            return AliasResult.SKIPPED

        alias = strip_wildcard(domain)
        desired = {
            ".crt": f"./{bundle}/fullchain.pem",
            ".key": f"./{bundle}/key.pem",
        }
        if (self.bundle_dir(bundle) / "chain.pem").is_file():
            desired[".chain.pem"] = f"./{bundle}/chain.pem"
        if (self.cert_dir / DHPARAM_FILE).is_file():
            desired[".dhparam.pem"] = f"./{DHPARAM_FILE}"

        changed = False
        for extension, target in desired.items():
            if self._link(self.cert_dir / f"{alias}{extension}", target):
                changed = True
        chain = self.cert_dir / f"{alias}.chain.pem"
        if ".chain.pem" not in desired and chain.is_symlink():
            # A chain left over from the previous bundle would split the domain.
            if Path(os.readlink(chain)).parent.name != bundle:
                chain.unlink()
                changed = True
        self._normalize_alias(alias)
        return AliasResult.CREATED if changed else AliasResult.ALREADY_CORRECT

    def aliased_domains(self) -> set[str]:
        """Return domains that currently have a ``.crt`` alias (default excluded)."""
        if not self.cert_dir.is_dir():
            return set()
        domains: set[str] = set()
        for path in self.cert_dir.glob("*.crt"):
            domain = path.name[: -len(".crt")]
            if domain and domain != DEFAULT_ALIAS:
                domains.add(domain)
        return domains

    def is_managed_alias(self, domain: str) -> bool:
        """Return True when the ``.crt`` alias of *domain* targets a marked bundle."""
        crt = self.cert_dir / f"{domain}.crt"
        if not crt.is_symlink():
            return False
        target = Path(os.readlink(crt))
        if not target.is_absolute():
            target = crt.parent / target
        return (target.parent / MARKER_FILE).exists()

    def bundle_for_alias(self, domain: str) -> str | None:
        """Return the bundle name the ``.crt`` alias of *domain* points into."""
        crt = self.cert_dir / f"{domain}.crt"
        if not crt.is_symlink():
            return None
        target = Path(os.readlink(crt))
        if not target.is_absolute():
            target = crt.parent / target
        return target.parent.name

    def remove_alias(self, domain: str) -> bool:
        """Remove every alias extension for *domain*; return True if any existed."""
        removed = False
        for extension in ALIAS_EXTENSIONS:
            path = self.cert_dir / f"{domain}{extension}"
            if path.is_symlink() or path.exists():
                path.unlink()
                removed = True
        return removed

    def reconcile(self, declared_domains: Iterable[str]) -> int:
        """Remove managed aliases for domains no longer declared.

        Returns the number of domains whose aliases were removed.
        """
        declared = {strip_wildcard(domain) for domain in declared_domains}
        stale = self.aliased_domains() - declared
        removed = 0
        for domain in sorted(stale):
            if not self.is_managed_alias(domain):
                LOGGER.debug("Leaving unmanaged certificate alias %s untouched.", domain)
                continue
            if self.remove_alias(domain):
                LOGGER.info("Removed certificate aliases for %s.", domain)
                removed += 1
        return removed

    # ------------------------------------------------------------------
    def _link(self, path: Path, target: str) -> bool:
        if path.is_symlink():
            try:
                if path.resolve() == (self.cert_dir / target).resolve():
                    return False
            except OSError:
                # Broken or looping symlink; replace it below.
                pass
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.unlink(missing_ok=True)
        tmp.symlink_to(target)
        os.replace(tmp, path)
        return True

    def _normalize_alias(self, alias: str) -> None:
        uid, gid = self._owner_ids()
        if uid == -1 and gid == -1:
            return
        for extension in ALIAS_EXTENSIONS:
            path = self.cert_dir / f"{alias}{extension}"
            if path.is_symlink():
                try:
                    os.lchown(path, uid, gid)
                except PermissionError as exc:
                    LOGGER.warning("Unable to change ownership of %s: %s", path, exc)

    def _apply(self, path: Path, mode: int) -> None:
        uid, gid = self._owner_ids()
        try:
            if uid != -1 or gid != -1:
                os.chown(path, uid, gid)
            os.chmod(path, mode)
        except PermissionError as exc:
            LOGGER.warning("Unable to normalise permissions on %s: %s", path, exc)

    def _owner_ids(self) -> tuple[int, int]:
        return _resolve_uid(self.files.owner), _resolve_gid(self.files.group)


def _resolve_uid(owner: str | None) -> int:
    if owner is None:
        return -1
    if owner.isdigit():
        return int(owner)
    try:
        return pwd.getpwnam(owner).pw_uid
    except KeyError:
        LOGGER.warning("Unknown file owner %r; leaving ownership unchanged.", owner)
        return -1


def _resolve_gid(group: str | None) -> int:
    if group is None:
        return -1
    if group.isdigit():
        return int(group)
    try:
        return grp.getgrnam(group).gr_gid
    except KeyError:
        LOGGER.warning("Unknown file group %r; leaving group unchanged.", group)
        return -1


__all__ = [
    "ALIAS_EXTENSIONS",
    "AliasStore",
    "BUNDLE_FILES",
    "DEFAULT_ALIAS",
    "DHPARAM_FILE",
    "MARKER_FILE",
]
