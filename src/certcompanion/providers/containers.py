"""Container runtime provider used to restart services after renewal."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass


class ContainerError(RuntimeError):
    """Raised when container runtime operations fail."""


@dataclass(slots=True)
class ContainerProvider:
    """Restart containers through the docker CLI."""

    docker_bin: str = "docker"

    def restart(self, container_id: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Restart the container identified by *container_id*."""
        return self._docker("restart", container_id, dry_run=dry_run)

    # ------------------------------------------------------------------
    def _docker(
        self,
        command: str,
        *arguments: str,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        args = [self.docker_bin, command, *arguments]
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.docker_bin} {command}",
            dry_run=dry_run,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        dry_run: bool,
    ) -> subprocess.CompletedProcess[str]:
        if dry_run:
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ContainerError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise ContainerError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["ContainerError", "ContainerProvider"]
