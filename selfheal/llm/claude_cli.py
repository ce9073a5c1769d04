from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass

from selfheal.errors import AIUnavailableError
from selfheal.procs.runner import ProcessRunner, SubprocessRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaudeCliClient:
    """
    Primary assistant: a locally installed CLI that reads the prompt on stdin and prints
    the answer on stdout.
    """

    command: str = "claude -p --output-format text"
    timeout_s: float = 120.0
    runner: ProcessRunner = SubprocessRunner()

    def complete(self, prompt: str) -> str:
        logger.info("asking claude cli (prompt: %dKB)", round(len(prompt) / 1024))
        res = self.runner.run(shlex.split(self.command), timeout_s=self.timeout_s, input_text=prompt)
        if res.exit_code != 0:
            raise AIUnavailableError(f"claude_cli_exit_{res.exit_code}: {(res.stderr or res.stdout)[:200]}")
        if not res.stdout.strip():
            raise AIUnavailableError("claude_cli_empty_output")
        return res.stdout
