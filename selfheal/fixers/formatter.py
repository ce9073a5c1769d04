from __future__ import annotations

from typing import List

from selfheal.fixers.workspace import ShellFixer, ShellTrigger


class FormatterFixer(ShellFixer):
    """Runs the project's formatter in write mode when a format check failed."""

    name = "formatter"
    branch_slug = "format"
    timeout_attr = "format_timeout_s"
    triggers = (
        ShellTrigger(
            label="prettier",
            markers=("Run Prettier with --write to fix", "Code style issues found in"),
            command=("npx", "--yes", "prettier", "--write", "."),
        ),
        ShellTrigger(
            label="dotnet format",
            markers=("WHITESPACE: Fix whitespace formatting", "Run 'dotnet format' to fix"),
            command=("dotnet", "format"),
        ),
        ShellTrigger(
            label="black",
            markers=("would be reformatted", "would reformat "),
            command=("black", "."),
        ),
    )

    def title(self, trigger: ShellTrigger) -> str:
        return f"style: apply {trigger.label} formatting"

    def summary(self, trigger: ShellTrigger, files: List[str]) -> str:
        return f"Applied {trigger.label} formatting to {len(files)} file(s)"
