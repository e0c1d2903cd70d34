"""Periodic scheduler that keeps certificates reconciled.

The daemon holds no state between cycles: account files, bundles, aliases
and marker files on disk are the only durable record, and every mutation
is idempotent. An unexpected exception therefore propagates and ends the
process; the hosting supervisor (systemd ``Restart=always`` or the
container runtime's restart policy) starts a fresh daemon, which simply
runs a new cycle.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .reconcile import Reconciler

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ServiceDaemon:
    """Run a reconciliation pass immediately, then on a fixed interval."""

    reconciler: Reconciler
    interval: float
    sleep: Callable[[float], None] = field(default=time.sleep)

    def run(self, *, force_renew: bool = False) -> None:
        """Loop until the process is stopped; force renewal on the first pass only."""
        cycle = 0
        force = force_renew
        while True:
            report = self.reconciler.run_cycle(force_renew=force)
            cycle += 1
            force = False
            LOGGER.info("Cycle %d complete: %s", cycle, report.to_dict())
            LOGGER.debug("Sleeping %.0f seconds before the next cycle.", self.interval)
            self.sleep(self.interval)


__all__ = ["ServiceDaemon"]
