from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from selfheal.ai.prompt import ContextFile, build_prompt, pattern_hint
from selfheal.errors import AIUnavailableError
from selfheal.llm.claude_cli import ClaudeCliClient
from selfheal.llm.gemini_client import GeminiClient
from selfheal.llm.response_parser import decode_ai_response
from selfheal.models import AIResponse, FailedJob, Pattern
from selfheal.procs.runner import ProcessRunner
from selfheal.settings import Settings

logger = logging.getLogger(__name__)


class PrimaryAssistant(Protocol):
    def complete(self, prompt: str) -> str: ...


class SecondaryAssistant(Protocol):
    def generate(self, prompt: str) -> str: ...


@dataclass(frozen=True)
class ChainResult:
    response: AIResponse
    source: Optional[str] = None  # "claude" | "gemini"


@dataclass(frozen=True)
class AIFallbackChain:
    """
    Pattern hint -> primary assistant -> secondary assistant.
    The secondary is only asked when the primary is unavailable or proposes nothing.
    """

    primary: Optional[PrimaryAssistant]
    secondary: Optional[SecondaryAssistant]
    max_prompt_file_chars: int = 60_000
    max_prompt_log_chars: int = 3_000

    @classmethod
    def from_settings(cls, settings: Settings, *, runner: ProcessRunner) -> "AIFallbackChain":
        secondary = None
        if settings.gemini_api_key:
            secondary = GeminiClient(
                api_key=settings.gemini_api_key,
                base_url=settings.gemini_base_url,
                model=settings.gemini_model,
                timeout_s=settings.gemini_timeout_s,
                max_tokens=settings.gemini_max_tokens,
                max_retries=settings.gemini_max_retries,
                retry_backoff_s=settings.gemini_retry_backoff_s,
            )
        return cls(
            primary=ClaudeCliClient(command=settings.claude_command, timeout_s=settings.claude_timeout_s, runner=runner),
            secondary=secondary,
            max_prompt_file_chars=settings.max_prompt_file_chars,
            max_prompt_log_chars=settings.max_prompt_log_chars,
        )

    def run(self, jobs: List[FailedJob], files: Dict[str, ContextFile], *, pattern: Optional[Pattern] = None) -> ChainResult:
        prompt = build_prompt(
            jobs,
            files,
            hint=pattern_hint(pattern),
            max_file_chars=self.max_prompt_file_chars,
            max_log_chars=self.max_prompt_log_chars,
        )
        notes: List[str] = []

        if self.primary is not None:
            try:
                decoded = decode_ai_response(self.primary.complete(prompt))
                if decoded.ok and decoded.response.fixes:
                    logger.info("claude proposed %d fix(es)", len(decoded.response.fixes))
                    return ChainResult(response=decoded.response, source="claude")
                notes.append(
                    decoded.response.explanation if decoded.ok and decoded.response.explanation else "Claude proposed no fix"
                )
            except AIUnavailableError as e:
                logger.warning("claude cli unavailable: %s", e)
                notes.append("Claude CLI unavailable")

        if self.secondary is None:
            logger.info("no secondary assistant configured")
            notes.append("No AI fix available")
            return ChainResult(response=AIResponse(fixes=[], explanation=". ".join(notes)))

        try:
            decoded = decode_ai_response(self.secondary.generate(prompt))
        except AIUnavailableError as e:
            logger.warning("gemini unavailable: %s", e)
            notes.append(f"Gemini error: {str(e)[:120]}")
            return ChainResult(response=AIResponse(fixes=[], explanation=". ".join(notes)))

        if not decoded.ok:
            logger.warning("could not parse gemini response: %s", decoded.error)
            notes.append("Could not parse Gemini response")
            return ChainResult(response=AIResponse(fixes=[], explanation=". ".join(notes)))
        logger.info("gemini proposed %d fix(es) (decoded via %s)", len(decoded.response.fixes), decoded.stage)
        return ChainResult(response=decoded.response, source="gemini")
