"""ACME client capability backed by the ``acme.sh`` shell client."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from ..models import EABCredential

LOGGER = logging.getLogger(__name__)

# acme.sh exits with 2 when the certificate is not yet due for renewal.
RENEWAL_NOT_DUE_RC = 2


class AcmeClientError(RuntimeError):
    """Raised when the ACME client cannot be executed at all."""


class AcmeExit(Enum):
    """Classified ACME client exit status."""

    SUCCESS = "success"
    RENEWAL_NOT_DUE = "renewal-not-due"
    FAILURE = "failure"

    @property
    def ok(self) -> bool:
        """Return True for non-failure outcomes."""
        return self is not AcmeExit.FAILURE


@dataclass(frozen=True)
class AcmeCommonParams:
    """Arguments shared by every ACME client invocation."""

    config_home: Path
    server: str
    user_agent: str
    ca_bundle: Path | None = None
    log_file: Path | None = None
    debug: bool = False


@dataclass(frozen=True)
class AccountParams:
    """Parameters for account registration or update."""

    common: AcmeCommonParams
    email: str | None = None
    eab: EABCredential | None = None


@dataclass(frozen=True)
class IssueParams:
    """Parameters for certificate issuance or renewal."""

    common: AcmeCommonParams
    domains: tuple[str, ...]
    key_size: str
    cert_file: Path
    key_file: Path
    ca_file: Path
    fullchain_file: Path
    days: int = 60
    ocsp: bool = False
    preferred_chain: str | None = None
    pre_hook: str | None = None
    post_hook: str | None = None
    force: bool = False
    renew_private_key: bool = True
    webroot: Path | None = None
    dns_api_config: Mapping[str, str] | None = field(default=None)


class AcmeClient(Protocol):
    """Capability consumed by the issuance orchestrator."""

    def register_account(self, params: AccountParams) -> AcmeExit:
        """Register a new ACME account."""

    def update_account(self, params: AccountParams) -> AcmeExit:
        """Update the contact details of an existing account."""

    def issue(self, params: IssueParams) -> AcmeExit:
        """Issue or renew a certificate."""


@dataclass(slots=True)
class AcmeShClient:
    """Drive ``acme.sh`` through subprocess invocations."""

    acme_bin: str = "acme.sh"

    def register_account(self, params: AccountParams) -> AcmeExit:
        """Run ``acme.sh --register-account``."""
        args = ["--register-account", *self.common_args(params.common)]
        if params.email:
            args.extend(["--accountemail", params.email])
        if params.eab is not None:
            args.extend(["--eab-kid", params.eab.kid, "--eab-hmac-key", params.eab.hmac_key])
        return self._classify(self._run_acme(args), "register-account")

    def update_account(self, params: AccountParams) -> AcmeExit:
        """Run ``acme.sh --update-account`` with the new email."""
        args = ["--update-account", *self.common_args(params.common)]
        if params.email:
            args.extend(["--accountemail", params.email])
        return self._classify(self._run_acme(args), "update-account")

    def issue(self, params: IssueParams) -> AcmeExit:
        """Run ``acme.sh --issue`` for every domain in *params*."""
        args, env = self.issue_args(params)
        return self._classify(self._run_acme(args, env=env), "issue")

    def issue_args(self, params: IssueParams) -> tuple[list[str], dict[str, str]]:
        """Return the argv and extra environment for an issuance call."""
        args = ["--issue", *self.common_args(params.common)]
        for domain in params.domains:
            args.extend(["-d", domain])
        args.extend(["--keylength", params.key_size])
        if params.ocsp:
            args.append("--ocsp-must-staple")
        if params.preferred_chain:
            args.extend(["--preferred-chain", params.preferred_chain])
        if params.pre_hook:
            args.extend(["--pre-hook", params.pre_hook])
        if params.post_hook:
            args.extend(["--post-hook", params.post_hook])
        args.extend(["--days", str(params.days)])
        if params.force:
            args.append("--force")
        if params.renew_private_key:
            args.append("--always-force-new-domain-key")

        env: dict[str, str] = {}
        if params.dns_api_config:
            args.extend(["--dns", params.dns_api_config["DNS_API"]])
            env = {key: value for key, value in params.dns_api_config.items() if key != "DNS_API"}
        elif params.webroot is not None:
            args.extend(["-w", str(params.webroot)])

        args.extend(
            [
                "--cert-file",
                str(params.cert_file),
                "--key-file",
                str(params.key_file),
                "--ca-file",
                str(params.ca_file),
                "--fullchain-file",
                str(params.fullchain_file),
            ]
        )
        return args, env

    def common_args(self, common: AcmeCommonParams) -> list[str]:
        """Return the arguments shared by every invocation."""
        args = [
            "--log",
            str(common.log_file) if common.log_file is not None else "/dev/null",
            "--useragent",
            common.user_agent,
            "--config-home",
            str(common.config_home),
            "--server",
            common.server,
        ]
        if common.ca_bundle is not None:
            args.extend(["--ca-bundle", str(common.ca_bundle)])
        if common.debug:
            args.extend(["--debug", "2"])
        return args

    # ------------------------------------------------------------------
    def _classify(self, result: subprocess.CompletedProcess[str], action: str) -> AcmeExit:
        if result.returncode == 0:
            return AcmeExit.SUCCESS
        if action == "issue" and result.returncode == RENEWAL_NOT_DUE_RC:
            return AcmeExit.RENEWAL_NOT_DUE
        message = (result.stderr or result.stdout or "no output").strip()
        LOGGER.error("%s %s failed (exit %s): %s", self.acme_bin, action, result.returncode, message)
        return AcmeExit.FAILURE

    def _run_acme(
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.acme_bin, *args]
        run_env = None
        if env:
            run_env = {**os.environ, **env}
        try:
            return subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
                env=run_env,
            )
        except FileNotFoundError as exc:
            raise AcmeClientError(f"{self.acme_bin} not found: {exc}") from exc


__all__ = [
    "AccountParams",
    "AcmeClient",
    "AcmeClientError",
    "AcmeCommonParams",
    "AcmeExit",
    "AcmeShClient",
    "IssueParams",
]
