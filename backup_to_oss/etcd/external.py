"""
External status tools (etcdutl, etcdctl).

Both tools are maintained together with the storage format, so their
report is preferred whenever they are installed.

Usage:
    etcdutl snapshot status <path> --write-out=json
    ETCDCTL_API=3 etcdctl snapshot status <path> --write-out=json
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping

from .base import ExternalToolError, SnapshotStatus
from .report import parse_status_json

logger = logging.getLogger(__name__)


class ExternalVerifier:
    """Runs an external tool and parses its JSON status report.

    Attributes:
        name: Tier name used in logs
        executable: Tool name or path
        extra_env: Variables added to the inherited environment

    Example:
        >>> verifier = ExternalVerifier.primary()
        >>> status = verifier.status("/backups/etcd.db")
    """

    def __init__(
        self,
        name: str,
        executable: str,
        extra_env: Mapping[str, str] | None = None,
    ) -> None:
        self.name = name
        self.executable = executable
        self.extra_env = dict(extra_env or {})

    @classmethod
    def primary(cls, executable: str = "etcdutl") -> ExternalVerifier:
        """etcdutl, the offline snapshot utility."""
        return cls("etcdutl", executable)

    @classmethod
    def legacy(cls, executable: str = "etcdctl", api_version: str = "3") -> ExternalVerifier:
        """etcdctl with its v3 API selected (deprecated snapshot status)."""
        return cls("etcdctl", executable, {"ETCDCTL_API": api_version})

    def command(self, path: str) -> list[str]:
        """Build the argument vector for a status request."""
        return [self.executable, "snapshot", "status", path, "--write-out=json"]

    def run(self, path: str) -> bytes:
        """Run the tool and return its raw stdout.

        Raises:
            ExternalToolError: If the tool is missing, exits non-zero,
                or prints nothing
        """
        env = None
        if self.extra_env:
            env = {**os.environ, **self.extra_env}

        try:
            result = subprocess.run(
                self.command(path),
                capture_output=True,
                env=env,
                check=True,
            )
        except FileNotFoundError as e:
            raise ExternalToolError(f"{self.name} not found: {self.executable}") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode("utf-8", "replace").strip()
            raise ExternalToolError(
                f"{self.name} exited with status {e.returncode}: {stderr}"
            ) from e
        except OSError as e:
            raise ExternalToolError(f"Failed to execute {self.name}: {e}") from e

        if not result.stdout.strip():
            raise ExternalToolError(f"{self.name} produced no output")
        return result.stdout

    def status(self, path: str) -> SnapshotStatus:
        """Run the tool and decode its report."""
        return parse_status_json(self.run(path))

    def __repr__(self) -> str:
        return f"ExternalVerifier(name={self.name!r}, executable={self.executable!r})"
