"""PowerShell subprocess execution for Hyper-V cmdlets.

Every call has an explicit timeout. Read-only queries may be retried with
exponential backoff through retry_handler; mutating calls run once.

Usage:
    executor = PowerShellExecutor()
    names = executor.run_json("Get-VM | Select-Object -ExpandProperty Name | ConvertTo-Json")
    executor.run(f"Start-VM -Name {ps_quote(vm_name)}")
"""

import json
import logging
import subprocess
from typing import Any

from hvfleet.errors import PowerShellError
from hvfleet.retry_config import get_retry_config
from hvfleet.retry_handler import retry_with_exponential_backoff

logger = logging.getLogger(__name__)

# Makes non-terminating cmdlet errors fail the process
_PREAMBLE = "$ErrorActionPreference = 'Stop'; $ProgressPreference = 'SilentlyContinue'; "


def ps_quote(value: Any) -> str:
    """Render a value as a single-quoted PowerShell literal."""
    return "'" + str(value).replace("'", "''") + "'"


class PowerShellExecutor:
    """Run PowerShell scripts non-interactively."""

    def __init__(self, executable: str = "powershell.exe", timeout: int = 600):
        self.executable = executable
        self.timeout = timeout

    def _command(self, script: str) -> list[str]:
        return [
            self.executable,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-Command",
            _PREAMBLE + script,
        ]

    def run(
        self,
        script: str,
        *,
        timeout: int | None = None,
        retry: bool = False,
    ) -> str:
        """Execute a script and return its stdout.

        Args:
            script: PowerShell script text
            timeout: Seconds before the process is killed (default: executor timeout)
            retry: Retry transient failures (only for read-only queries)

        Raises:
            PowerShellError: On non-zero exit or timeout
        """
        cmd = self._command(script)
        effective_timeout = timeout or self.timeout

        def _run() -> subprocess.CompletedProcess[str]:
            return subprocess.run(
                cmd, capture_output=True, text=True, check=True, timeout=effective_timeout
            )

        if retry:
            config = get_retry_config()
            _run = retry_with_exponential_backoff(
                max_attempts=config.hypervisor_query_max_attempts,
                initial_delay=config.hypervisor_query_initial_delay,
                max_delay=config.hypervisor_query_max_delay,
                jitter=config.jitter_enabled,
                retryable_exceptions=(subprocess.CalledProcessError, subprocess.TimeoutExpired),
            )(_run)

        logger.debug(f"PowerShell: {script}")
        try:
            result = _run()
        except subprocess.TimeoutExpired as e:
            raise PowerShellError(
                f"PowerShell command timed out after {effective_timeout}s"
            ) from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise PowerShellError(
                f"PowerShell command failed (exit {e.returncode}): {stderr or 'no error output'}",
                returncode=e.returncode,
                stderr=stderr,
            ) from e
        except FileNotFoundError as e:
            raise PowerShellError(f"PowerShell executable not found: {self.executable}") from e

        return result.stdout

    def run_json(self, script: str, *, timeout: int | None = None, retry: bool = False) -> Any:
        """Execute a script that ends in ConvertTo-Json and parse its output.

        Returns None when the script produced no output.
        """
        stdout = self.run(script, timeout=timeout, retry=retry).strip()
        if not stdout:
            return None
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise PowerShellError(f"Unexpected PowerShell output: {stdout[:200]}") from e


__all__ = ["PowerShellExecutor", "ps_quote"]
