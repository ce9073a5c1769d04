from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class ProcessResult:
    stdout: str
    exit_code: int
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProcessRunner(Protocol):
    def run(
        self,
        command: List[str],
        *,
        cwd: str | None = None,
        timeout_s: float | None = None,
        input_text: str | None = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessResult: ...


@dataclass(frozen=True)
class SubprocessRunner:
    """
    Runs external commands with captured output and an explicit timeout.
    Timeouts and missing binaries are reported as exit codes, not exceptions.
    """

    default_timeout_s: float = 300.0

    def run(
        self,
        command: List[str],
        *,
        cwd: str | None = None,
        timeout_s: float | None = None,
        input_text: str | None = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessResult:
        timeout = float(timeout_s) if timeout_s else self.default_timeout_s
        try:
            p = subprocess.run(
                command,
                cwd=cwd,
                input=input_text,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            so = e.stdout.decode("utf-8", errors="replace") if isinstance(e.stdout, (bytes, bytearray)) else (e.stdout or "")
            logger.warning("command timed out after %.0fs: %s", timeout, command[0] if command else "")
            return ProcessResult(stdout=so, exit_code=EXIT_TIMEOUT, stderr=f"timeout_s={timeout}")
        except FileNotFoundError as e:
            return ProcessResult(stdout="", exit_code=EXIT_NOT_FOUND, stderr=str(e))
        return ProcessResult(stdout=p.stdout or "", exit_code=p.returncode, stderr=p.stderr or "")

