"""Provider interfaces for certcompanion's external collaborators."""
from __future__ import annotations

from .acme import (
    AccountParams,
    AcmeClient,
    AcmeClientError,
    AcmeCommonParams,
    AcmeExit,
    AcmeShClient,
    IssueParams,
)
from .containers import ContainerError, ContainerProvider
from .nginx import NginxError, NginxProvider

__all__ = [
    "AccountParams",
    "AcmeClient",
    "AcmeClientError",
    "AcmeCommonParams",
    "AcmeExit",
    "AcmeShClient",
    "ContainerError",
    "ContainerProvider",
    "IssueParams",
    "NginxError",
    "NginxProvider",
]
