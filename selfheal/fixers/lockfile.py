from __future__ import annotations

from typing import List

from selfheal.fixers.workspace import ShellFixer, ShellTrigger


class LockfileFixer(ShellFixer):
    """Regenerates an out-of-sync lockfile with the package manager that complained about it."""

    name = "lockfile"
    branch_slug = "lockfile"
    timeout_attr = "install_timeout_s"
    triggers = (
        ShellTrigger(
            label="pnpm",
            markers=("ERR_PNPM_OUTDATED_LOCKFILE", 'Cannot install with "frozen-lockfile"'),
            command=("pnpm", "install", "--no-frozen-lockfile", "--ignore-scripts"),
        ),
        ShellTrigger(
            label="npm",
            markers=(
                "can only install packages when your package.json and package-lock.json",
                "npm ci` can only install",
            ),
            command=("npm", "install", "--package-lock-only", "--ignore-scripts"),
        ),
        ShellTrigger(
            label="yarn",
            markers=("Your lockfile needs to be updated", "The lockfile would have been modified by this install"),
            command=("yarn", "install", "--ignore-scripts"),
            env=(("YARN_ENABLE_IMMUTABLE_INSTALLS", "false"),),
        ),
    )

    def title(self, trigger: ShellTrigger) -> str:
        return f"fix: resync {trigger.label} lockfile"

    def summary(self, trigger: ShellTrigger, files: List[str]) -> str:
        return f"Regenerated the {trigger.label} lockfile ({', '.join(files)})"
