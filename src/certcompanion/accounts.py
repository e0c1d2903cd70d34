"""ACME account identity resolution.

Accounts live in the ACME client's own storage tree so that both sides agree
on where a registration is recorded::

    <acme_home>/<email | default | staging>/ca/<ca host>/<ca path...>/account.json

The presence of ``account.json`` is treated as proof of a prior successful
registration; an existing account is never registered again, only updated
when the configured email changed.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

import httpx

from . import __version__
from .config import ZEROSSL_CA_URI, AcmeConfig
from .models import AccountInfo, EABCredential, IssuancePlan

LOGGER = logging.getLogger(__name__)

ZEROSSL_EAB_URL = "https://api.zerossl.com/acme/eab-credentials"
DEFAULT_SLOT = "default"
STAGING_SLOT = "staging"
ACCOUNT_FILE_NAME = "account.json"


class AccountError(RuntimeError):
    """Raised when no usable ACME account identity can be resolved."""


class EABFetchError(AccountError):
    """Raised when dynamic EAB credentials cannot be obtained."""


@dataclass(slots=True)
class ZeroSSLClient:
    """Fetch EAB credentials from the ZeroSSL credential issuance API."""

    api_url: str = ZEROSSL_EAB_URL
    timeout: float = 30.0
    transport: httpx.BaseTransport | None = None

    def fetch_eab(self, api_key: str) -> EABCredential:
        """Exchange *api_key* for a fresh EAB credential pair."""
        headers = {"User-Agent": f"certcompanion/{__version__}"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.api_url, params={"access_key": api_key}, headers=headers)
        except httpx.HTTPError as exc:
            raise EABFetchError(f"ZeroSSL EAB request failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise EABFetchError(
                f"ZeroSSL EAB response was not JSON (HTTP {response.status_code})."
            ) from exc
        if not isinstance(payload, dict) or payload.get("success") is not True:
            detail = payload.get("error") if isinstance(payload, dict) else None
            raise EABFetchError(
                f"ZeroSSL EAB request rejected (HTTP {response.status_code}): {detail or payload!r}"
            )
        kid = payload.get("eab_kid")
        hmac_key = payload.get("eab_hmac_key")
        if not kid or not hmac_key:
            raise EABFetchError("ZeroSSL EAB response is missing eab_kid or eab_hmac_key.")
        return EABCredential(kid=str(kid), hmac_key=str(hmac_key))


@dataclass(slots=True)
class AccountManager:
    """Decide whether a plan needs account registration, update or neither."""

    acme_home: Path
    acme: AcmeConfig
    zerossl: ZeroSSLClient = field(default_factory=ZeroSSLClient)

    def resolve(self, plan: IssuancePlan) -> AccountInfo:
        """Return the account identity for *plan*.

        Raises :class:`AccountError` when the CA requires external account
        binding and no credential can be produced.
        """
        config_home, email = self.slot_for(plan)
        account_file = account_ca_dir(config_home, plan.ca_uri) / ACCOUNT_FILE_NAME

        if account_file.exists():
            recorded = recorded_email(account_file)
            return AccountInfo(
                config_home=config_home,
                account_file=account_file,
                registration_needed=False,
                email=email,
                update_email=email is not None and recorded != email,
            )

        return AccountInfo(
            config_home=config_home,
            account_file=account_file,
            registration_needed=True,
            email=email,
            eab=self._resolve_eab(plan, email),
        )

    def slot_for(self, plan: IssuancePlan) -> tuple[Path, str | None]:
        """Return the config home and effective email for *plan*."""
        if plan.staging:
            # Staging identities never share storage with production accounts.
            return self.acme_home / STAGING_SLOT, None
        if plan.email:
            return self.acme_home / plan.email, plan.email
        return self.acme_home / DEFAULT_SLOT, None

    def _resolve_eab(self, plan: IssuancePlan, email: str | None) -> EABCredential | None:
        if plan.eab_kid and plan.eab_hmac_key:
            return EABCredential(kid=plan.eab_kid, hmac_key=plan.eab_hmac_key)
        if self.acme.eab_kid and self.acme.eab_hmac_key:
            return EABCredential(kid=self.acme.eab_kid, hmac_key=self.acme.eab_hmac_key)
        if email:
            return None
        if not is_zerossl(plan.ca_uri):
            return None
        if not self.acme.zerossl_api_key:
            raise AccountError(
                f"Service {plan.service_id}: ZeroSSL requires an email, EAB credentials or "
                "an API key; no email-bound account possible."
            )
        LOGGER.info("Service %s: fetching EAB credentials from ZeroSSL.", plan.service_id)
        try:
            return self.zerossl.fetch_eab(self.acme.zerossl_api_key)
        except EABFetchError as exc:
            raise EABFetchError(
                f"Service {plan.service_id}: {exc}; no email-bound account possible."
            ) from exc


def account_ca_dir(config_home: Path, ca_uri: str) -> Path:
    """Return the per-CA account directory below *config_home*."""
    parts = urlsplit(ca_uri)
    host = parts.netloc or ca_uri
    segments = [segment for segment in parts.path.split("/") if segment]
    return config_home.joinpath("ca", host, *segments)


def recorded_email(account_file: Path) -> str | None:
    """Return the first ``mailto:`` contact stored in *account_file*."""
    try:
        payload = json.loads(account_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        LOGGER.warning("Unable to read ACME account file %s: %s", account_file, exc)
        return None
    contacts = payload.get("contact") if isinstance(payload, dict) else None
    if not isinstance(contacts, list):
        return None
    for contact in contacts:
        if isinstance(contact, str) and contact.startswith("mailto:"):
            return contact[len("mailto:") :]
    return None


def is_zerossl(ca_uri: str) -> bool:
    """Return True when *ca_uri* is the ZeroSSL ACME endpoint."""
    return ca_uri.rstrip("/") == ZEROSSL_CA_URI


__all__ = [
    "AccountError",
    "AccountManager",
    "EABFetchError",
    "ZeroSSLClient",
    "account_ca_dir",
    "is_zerossl",
    "recorded_email",
]
