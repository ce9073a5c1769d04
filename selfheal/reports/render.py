from __future__ import annotations

from typing import List, Optional


def run_url(web_base: str, repo: str, run_id: str) -> str:
    return f"{web_base.rstrip('/')}/{repo}/actions/runs/{run_id}"


def fix_pr_title(pattern_id: Optional[str]) -> str:
    return f"fix: CI fix [pattern:{pattern_id}]" if pattern_id else "fix: AI-generated CI fix"


def render_fix_pr_body(
    *,
    repo: str,
    run_id: str,
    web_base: str,
    explanation: str,
    files: List[str],
    pattern_id: Optional[str] = None,
    source: Optional[str] = None,
) -> str:
    """
    Markdown body for a fix PR: where the failure came from, which files changed and why.
    """
    origin = f"Pattern DB (`{pattern_id}`)" if pattern_id else (source or "Deterministic fixers")
    lines: list[str] = []
    lines.append("## Auto-Generated CI Fix")
    lines.append("")
    lines.append(f"**Failed Run**: {run_url(web_base, repo, run_id)}")
    lines.append(f"**Source**: {origin}")
    if pattern_id:
        lines.append(f"**Pattern ID**: `{pattern_id}`")
    lines.append("")
    lines.append("### Analysis")
    lines.append(explanation.strip() or "(none)")
    lines.append("")
    lines.append("### Files changed")
    for f in files:
        lines.append(f"- `{f}`")
    lines.append("")
    lines.append("---")
    lines.append("> This PR was generated automatically. Please review carefully before merging.")
    return "\n".join(lines)


def render_shell_fix_body(*, repo: str, run_id: str, web_base: str, summary: str, files: List[str]) -> str:
    lines: list[str] = []
    lines.append("## Auto-Generated CI Fix")
    lines.append("")
    if run_id:
        lines.append(f"**Failed Run**: {run_url(web_base, repo, run_id)}")
    lines.append(f"**Summary**: {summary}")
    lines.append("")
    lines.append("### Files changed")
    for f in files:
        lines.append(f"- `{f}`")
    lines.append("")
    lines.append("---")
    lines.append("> Produced by running the project's own tooling; no source was edited by hand.")
    return "\n".join(lines)


def manual_issue_title(run_id: str) -> str:
    return f"CI failure requires manual fix (run #{run_id})"


def render_manual_issue_body(
    *,
    repo: str,
    run_id: str,
    web_base: str,
    explanation: str,
    reason: Optional[str] = None,
) -> str:
    lines: list[str] = []
    lines.append("## CI Failure - Manual Intervention Needed")
    lines.append("")
    lines.append(f"**Failed Run**: {run_url(web_base, repo, run_id)}")
    lines.append("")
    lines.append("### Analysis")
    lines.append(explanation.strip() or "Could not determine a fix")
    lines.append("")
    lines.append("### Why no auto-fix?")
    lines.append(reason or "No reliable fix could be generated for this failure. Manual investigation is required.")
    return "\n".join(lines)


def escalation_issue_title(run_id: str) -> str:
    return f"CI failure escalated after repeated fix attempts (run #{run_id})"


def render_escalation_issue_body(
    *,
    repo: str,
    run_id: str,
    web_base: str,
    signature: str,
    attempts: int,
) -> str:
    lines: list[str] = []
    lines.append("## CI Failure - Escalated")
    lines.append("")
    lines.append(f"**Failed Run**: {run_url(web_base, repo, run_id)}")
    lines.append(f"**Error signature**: `{signature}`")
    lines.append(f"**Automated attempts so far**: {attempts}")
    lines.append("")
    lines.append("Automated remediation has already tried this failure and it keeps coming back.")
    lines.append("No further automatic attempts will be made for this signature.")
    lines.append("")
    lines.append("Once resolved, re-enable automation with:")
    lines.append("")
    lines.append("```")
    lines.append(f'selfheal-reset --repo {repo} --signature "{signature}"')
    lines.append("```")
    return "\n".join(lines)
