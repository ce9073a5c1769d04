from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SELFHEAL_", extra="ignore")

    # Hosting platform (GitHub REST)
    github_token: str | None = None
    github_api_base: str = "https://api.github.com"
    # Used for clone URLs and links in PR / issue bodies.
    github_web_base: str = "https://github.com"
    github_timeout_s: float = 30.0
    # Rate-limited calls are retried with exponential backoff: backoff_s * 2**(attempt-1)
    github_max_retries: int = 3
    github_backoff_s: float = 1.0

    # Writes (branches, commits, PRs, issues, reruns) are logged and skipped.
    dry_run: bool = False

    # Shared state files (read-modify-write under a sidecar lock)
    patterns_path: str = "data/patterns.json"
    cooldowns_path: str = "data/self-heal-cooldowns.json"
    activity_log_path: str = "var/audit/selfheal_activity.jsonl"
    lock_timeout_s: float = 30.0
    lock_poll_s: float = 0.1

    # Pattern store tuning. These are empirical; keep them overridable.
    pattern_match_threshold: float = 0.8
    pattern_success_delta: float = 0.05
    pattern_failure_delta: float = 0.1
    pattern_new_confidence: float = 0.5
    pattern_min_signature_chars: int = 10

    # Cooldown / escalation
    cooldown_hours: float = 24.0
    max_attempts_before_escalation: int = 2
    cooldown_retention_days: float = 7.0

    # Error collection + context discovery
    max_log_lines: int = 400
    max_file_chars: int = 50_000
    max_sibling_bytes: int = 300_000
    max_log_extracted_files: int = 10

    # Prompt size caps
    max_prompt_file_chars: int = 60_000
    max_prompt_log_chars: int = 3_000

    # Primary assistant: local CLI, prompt on stdin, text on stdout
    claude_command: str = "claude -p --output-format text"
    claude_timeout_s: float = 120.0

    # Secondary assistant: Gemini HTTP API (only needed when the CLI is unavailable)
    gemini_api_key: str | None = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-2.5-flash"
    gemini_timeout_s: float = 120.0
    gemini_max_tokens: int = 8192
    # Transport errors and 429/503 only; other statuses fail fast.
    gemini_max_retries: int = 2
    gemini_retry_backoff_s: float = 2.0

    # Publishing
    fix_branch_prefix: str = "ai-fix/"
    fix_label: str = "ai-fix"
    manual_label: str = "ci-failure"
    escalation_label: str = "ci-escalation"
    auto_merge_max_files: int = 3
    auto_merge_max_changed_lines: int = 200
    auto_merge_confidence: float = 0.9

    # Shell-mediated fixers (shallow clone + package manager / formatter)
    git_binary: str = "git"
    git_author_name: str = "selfheal-bot"
    git_author_email: str = "selfheal-bot@users.noreply.github.com"
    clone_timeout_s: float = 180.0
    install_timeout_s: float = 600.0
    format_timeout_s: float = 300.0
    push_timeout_s: float = 120.0

    # Project-wide lint config receiving suppressions for rules we cannot fix in source.
    lint_config_path: str = ".editorconfig"
