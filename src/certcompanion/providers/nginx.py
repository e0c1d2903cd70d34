"""Nginx provider: liveness, reloads and generated challenge configuration."""
from __future__ import annotations

import os
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..models import strip_wildcard
from ..templates import TemplateEngine

CHALLENGE_START_MARKER = "## Start of configuration added by certcompanion"
CHALLENGE_END_MARKER = "## End of configuration added by certcompanion"
STANDALONE_PREFIX = "standalone-cert-"
STANDALONE_SUFFIX = ".conf"

_CHALLENGE_BLOCK = re.compile(
    re.escape(CHALLENGE_START_MARKER) + r".*?" + re.escape(CHALLENGE_END_MARKER) + r"\n?",
    re.DOTALL,
)


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class NginxProvider:
    """Manage the nginx reverse proxy that serves the certificates."""

    templates: TemplateEngine
    vhost_dir: Path = Path("/etc/nginx/vhost.d")
    conf_dir: Path = Path("/etc/nginx/conf.d")
    pid_file: Path = Path("/run/nginx.pid")
    webroot: Path = Path("/usr/share/nginx/html")
    nginx_bin: str = "nginx"

    def is_running(self) -> bool:
        """Return True when the pid file names a live process."""
        try:
            pid = int(self.pid_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Process exists but belongs to another user.
            return True
        return True

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the configuration."""
        return self._run_nginx(["-t"])

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload nginx to apply configuration and certificate changes."""
        return self._run_nginx(["-s", "reload"])

    # HTTP-01 challenge locations --------------------------------------
    def vhost_path(self, domain: str) -> Path:
        """Return the per-vhost include file for *domain*."""
        return self.vhost_dir / strip_wildcard(domain)

    def has_challenge_location(self, domain: str) -> bool:
        """Return True when the challenge block is present for *domain*."""
        path = self.vhost_path(domain)
        if not path.exists():
            return False
        return CHALLENGE_START_MARKER in path.read_text(encoding="utf-8")

    def add_challenge_location(self, domain: str) -> bool:
        """Append the challenge location block for *domain*; return True if added."""
        if self.has_challenge_location(domain):
            return False
        path = self.vhost_path(domain)
        block = self.templates.render_to_string(
            "nginx/challenge-location.conf.j2",
            {
                "start_marker": CHALLENGE_START_MARKER,
                "end_marker": CHALLENGE_END_MARKER,
                "webroot": str(self.webroot),
            },
        )
        existing = path.read_text(encoding="utf-8") if path.exists() else ""
        if existing and not existing.endswith("\n"):
            existing += "\n"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(existing + block, encoding="utf-8")
        return True

    def remove_challenge_location(self, domain: str) -> bool:
        """Strip the challenge block for *domain*; return True if removed."""
        if not self.has_challenge_location(domain):
            return False
        path = self.vhost_path(domain)
        remaining = _CHALLENGE_BLOCK.sub("", path.read_text(encoding="utf-8"))
        if remaining.strip():
            path.write_text(remaining, encoding="utf-8")
        else:
            path.unlink(missing_ok=True)
        return True

    # Standalone certificates ------------------------------------------
    def standalone_path(self, base_domain: str) -> Path:
        """Return the server block path for a standalone certificate."""
        return self.conf_dir / f"{STANDALONE_PREFIX}{strip_wildcard(base_domain)}{STANDALONE_SUFFIX}"

    def render_standalone(self, service_id: str, domains: Sequence[str]) -> bool:
        """Render the port-80 server block serving challenges for *domains*.

        Returns ``True`` when the on-disk configuration changed. A rendered file
        that fails ``nginx -t`` is rolled back and :class:`NginxError` raised.
        """
        destination = self.standalone_path(domains[0])
        previous = destination.read_text(encoding="utf-8") if destination.exists() else None
        changed = self.templates.render_to_path(
            "nginx/standalone.conf.j2",
            destination,
            {
                "service_id": service_id,
                "domains": [strip_wildcard(domain) for domain in domains],
                "webroot": str(self.webroot),
            },
            mode=0o644,
        )
        if not changed:
            return False
        try:
            self.test_config()
        except NginxError:
            if previous is None:
                destination.unlink(missing_ok=True)
            else:
                destination.write_text(previous, encoding="utf-8")
            raise
        return True

    def standalone_confs(self) -> dict[str, Path]:
        """Return existing standalone server blocks keyed by base domain."""
        if not self.conf_dir.is_dir():
            return {}
        found: dict[str, Path] = {}
        for path in sorted(self.conf_dir.glob(f"{STANDALONE_PREFIX}*{STANDALONE_SUFFIX}")):
            domain = path.name[len(STANDALONE_PREFIX) : -len(STANDALONE_SUFFIX)]
            found[domain] = path
        return found

    def remove_standalone(self, base_domain: str) -> bool:
        """Remove the standalone server block for *base_domain*."""
        path = self.standalone_path(base_domain)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.nginx_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise NginxError(f"{self.nginx_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise NginxError(
                f"{self.nginx_bin} {' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = [
    "CHALLENGE_END_MARKER",
    "CHALLENGE_START_MARKER",
    "NginxError",
    "NginxProvider",
]
