from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from selfheal.ai.chain import AIFallbackChain
from selfheal.ai.prompt import ContextFile, context_from_full_text, fit_to_budget
from selfheal.ai.safety import detect_prompt_injection, validate_fixes
from selfheal.classifier.rules import TransientFailureClassifier
from selfheal.collector.jobs import ErrorCollector, split_build_jobs
from selfheal.errors import GitHubApiError, PublishError
from selfheal.fixers.base import FixContext, FixerResult, SourceFiles, all_log_text
from selfheal.fixers.registry import FixerRegistry
from selfheal.gitops.github_rest import GitHubRestClient
from selfheal.gitops.labels import ensure_escalation_label, ensure_manual_label
from selfheal.gitops.publisher import CommitPublisher
from selfheal.memory.cooldowns import CooldownTracker
from selfheal.memory.patterns import PatternStore
from selfheal.models import (
    Annotation,
    CooldownDecision,
    FailedJob,
    IssueResult,
    RemediationOutcome,
    RemediationResult,
)
from selfheal.parsers.ci_log import extract_log_paths, learnable_signature, primary_signature
from selfheal.procs.runner import ProcessRunner, SubprocessRunner
from selfheal.reports.render import (
    escalation_issue_title,
    fix_pr_title,
    manual_issue_title,
    render_escalation_issue_body,
    render_fix_pr_body,
    render_manual_issue_body,
)
from selfheal.settings import Settings
from selfheal.telemetry.audit import ActivityLogger

logger = logging.getLogger(__name__)


class RemediationOrchestrator:
    """
    One invocation per failed run:

    loop-guard -> cooldown-check -> {flaky-rerun | shell passes + build analysis}
               -> {publish | escalate | manual issue}

    Every path that gets past the cooldown check records exactly one attempt.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        client: GitHubRestClient,
        patterns: PatternStore,
        cooldowns: CooldownTracker,
        activity: ActivityLogger,
        ai_chain: AIFallbackChain,
        runner: ProcessRunner,
        classifier: TransientFailureClassifier | None = None,
        registry_factory: Callable[[FixContext], FixerRegistry] = FixerRegistry.default,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.client = client
        self.repo = client.repo
        self.patterns = patterns
        self.cooldowns = cooldowns
        self.activity = activity
        self.ai_chain = ai_chain
        self.runner = runner
        self.classifier = classifier or TransientFailureClassifier()
        self.registry_factory = registry_factory
        self.clock = clock
        self.collector = ErrorCollector(client=client, max_log_lines=settings.max_log_lines)
        self.publisher = CommitPublisher(client=client, settings=settings, clock=clock)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repo: str,
        transport: httpx.BaseTransport | None = None,
        runner: ProcessRunner | None = None,
    ) -> "RemediationOrchestrator":
        runner = runner or SubprocessRunner()
        return cls(
            settings=settings,
            client=GitHubRestClient.from_settings(settings, repo=repo, transport=transport),
            patterns=PatternStore.from_settings(settings),
            cooldowns=CooldownTracker.from_settings(settings),
            activity=ActivityLogger(settings.activity_log_path),
            ai_chain=AIFallbackChain.from_settings(settings, runner=runner),
            runner=runner,
        )

    # -------- entry point --------

    def remediate(self, run_id: str) -> RemediationResult:
        cid = self.activity.new_correlation_id()
        self._event(cid, "remediation.started", {"run_id": run_id})

        head_branch = self._head_branch(run_id)
        if head_branch.startswith(self.settings.fix_branch_prefix):
            logger.info("skipping: run is on remediation branch %s", head_branch)
            self._event(cid, "remediation.skipped", {"run_id": run_id, "reason": "loop_guard", "branch": head_branch})
            return self._result(run_id, cid, RemediationOutcome.loop_guard, explanation=f"run on {head_branch}")

        jobs = self.collector.collect(run_id)
        if not jobs:
            self._event(cid, "remediation.skipped", {"run_id": run_id, "reason": "no_failed_jobs"})
            return self._result(run_id, cid, RemediationOutcome.no_failures)

        signature = primary_signature(jobs)
        decision = self.cooldowns.check(self.repo, signature)
        if decision == CooldownDecision.skip:
            self._event(cid, "remediation.skipped", {"run_id": run_id, "reason": "cooldown", "signature": signature})
            return self._result(run_id, cid, RemediationOutcome.skipped_cooldown, signature=signature)
        if decision == CooldownDecision.escalate:
            return self._escalate(run_id, cid, signature)

        flaky = self.classifier.classify(jobs)
        if flaky.flaky:
            result = self._rerun(run_id, cid, signature, flaky.matches)
            if result is not None:
                return result

        return self._fix(run_id, cid, signature, jobs)

    # -------- branches of the state machine --------

    def _escalate(self, run_id: str, cid: str, signature: str) -> RemediationResult:
        entry = self.cooldowns.mark_escalated(self.repo, signature)
        issue: Optional[IssueResult] = None
        ensure_escalation_label(self.client, self.settings)
        try:
            issue = self.client.create_issue(
                title=escalation_issue_title(run_id),
                body=render_escalation_issue_body(
                    repo=self.repo,
                    run_id=run_id,
                    web_base=self.settings.github_web_base,
                    signature=signature,
                    attempts=entry.attempts,
                ),
                labels=[self.settings.escalation_label],
            )
        except GitHubApiError as e:
            logger.error("could not open escalation issue: %s", e)
        if issue is None:
            self._no_output(cid, run_id, "escalation issue could not be created")
        else:
            self._event(cid, "remediation.escalated", {"run_id": run_id, "signature": signature, "issue": issue.issue_url})
        return self._result(run_id, cid, RemediationOutcome.escalated, signature=signature, issue=issue)

    def _rerun(self, run_id: str, cid: str, signature: str, matches: List[str]) -> Optional[RemediationResult]:
        try:
            self.client.rerun_failed_jobs(run_id=run_id)
        except GitHubApiError as e:
            logger.warning("rerun of failed jobs failed: %s", e)
            return None
        self.cooldowns.record_attempt(self.repo, signature, success=True)
        self._event(cid, "remediation.rerun_triggered", {"run_id": run_id, "signature": signature, "matches": matches})
        return self._result(
            run_id,
            cid,
            RemediationOutcome.rerun,
            signature=signature,
            explanation=f"Transient failure ({', '.join(matches)}); failed jobs rerun",
        )

    def _fix(self, run_id: str, cid: str, signature: str, jobs: List[FailedJob]) -> RemediationResult:
        base_branch = self._default_branch()
        files = SourceFiles(self.client, base_branch)
        ctx = FixContext(
            repo=self.repo,
            base_branch=base_branch,
            settings=self.settings,
            client=self.client,
            files=files,
            runner=self.runner,
            run_id=run_id,
        )
        registry = self.registry_factory(ctx)

        shell = registry.run_shell(jobs)
        target = split_build_jobs(jobs)
        combined = FixerResult()
        combined.merge(registry.run_source(target))
        resolved = combined.resolved_messages | shell.resolved_messages

        unresolved = [a for j in target for a in j.annotations if a.message not in resolved]
        logs_only = any(j.log_text for j in target) and all(not j.annotations for j in target)
        needs_ai = bool(unresolved) or (logs_only and not shell.prs)

        pattern_id: Optional[str] = None
        ai_source: Optional[str] = None
        no_fix_reason: Optional[str] = None
        explanation_parts: List[str] = list(combined.notes)

        if needs_ai:
            injection = detect_prompt_injection(all_log_text(target) + "\n" + "\n".join(a.message for a in unresolved))
            context = self._context_files(target, unresolved, files, combined.partial_context, logs_only)
            if not injection.ok:
                logger.warning("prompt-injection markers in logs, not sending to AI: %s", injection.matches)
                no_fix_reason = (
                    "The CI logs contain text that looks like instructions aimed at an AI assistant "
                    f"({', '.join(injection.matches[:3])}), so they were not sent for automated analysis."
                )
            elif not context and not logs_only:
                no_fix_reason = "None of the files referenced by the errors could be fetched for analysis."
            else:
                matched = self.patterns.match(target)
                chain = self.ai_chain.run(target, context, pattern=matched)
                validation = validate_fixes(
                    chain.response.fixes,
                    full_text=files.current,
                    partial_paths={p for p, c in context.items() if c.partial},
                )
                for fx in validation.accepted:
                    files.update(fx.path, fx.content or "")
                    combined.add_fix(fx)
                if chain.response.explanation:
                    explanation_parts.append(chain.response.explanation)
                if validation.rejected:
                    explanation_parts.append(f"Rejected {len(validation.rejected)} unsafe AI fix(es)")
                ai_source = chain.source
                pattern_id = self._learn(matched, target, bool(validation.accepted), chain.response.explanation)

        explanation = ". ".join(p.strip().rstrip(".") for p in explanation_parts if p.strip())
        prs = list(shell.prs)
        issue: Optional[IssueResult] = None

        if combined.fixes:
            try:
                pr = self.publisher.publish(
                    base_branch=base_branch,
                    fixes=combined.fixes,
                    originals={f.path: files.original(f.path) for f in combined.fixes},
                    title=fix_pr_title(pattern_id),
                    body=render_fix_pr_body(
                        repo=self.repo,
                        run_id=run_id,
                        web_base=self.settings.github_web_base,
                        explanation=explanation,
                        files=[f.path for f in combined.fixes],
                        pattern_id=pattern_id,
                        source=f"AI analysis ({ai_source})" if ai_source else None,
                    ),
                    pattern_confidence=self.patterns.confidence_of(pattern_id),
                )
                prs.append(pr)
            except PublishError as e:
                logger.error("publish failed, falling back to a manual issue: %s", e)
                no_fix_reason = f"A fix was prepared but could not be published ({e})."

        if not prs:
            issue = self._manual_issue(run_id, explanation, no_fix_reason)

        success = bool(prs)
        self.cooldowns.record_attempt(self.repo, signature, success=success)

        for pr in prs:
            self._event(cid, "remediation.pr_created", {"run_id": run_id, "pr": pr.pr_url, "branch": pr.branch_name, "auto_merge": pr.auto_merge})
        if issue is not None:
            self._event(cid, "remediation.issue_created", {"run_id": run_id, "issue": issue.issue_url, "reason": no_fix_reason})
        if not prs and issue is None:
            self._no_output(cid, run_id, "neither a PR nor an issue could be created")

        outcome = RemediationOutcome.pr_created if prs else RemediationOutcome.issue_created
        return self._result(
            run_id,
            cid,
            outcome,
            signature=signature,
            explanation=explanation,
            prs=prs,
            issue=issue,
            pattern_id=pattern_id,
        )

    # -------- helpers --------

    def _learn(self, matched, target: List[FailedJob], success: bool, explanation: str) -> Optional[str]:
        if matched is not None:
            self.patterns.record_hit(pattern_id=matched.id, repo=self.repo, success=success)
            return matched.id
        if not success:
            return None
        sig = learnable_signature(target)
        if not sig:
            return None
        return self.patterns.add_new(signature=sig, fix_summary=explanation[:200], repo=self.repo)

    def _context_files(
        self,
        target: List[FailedJob],
        unresolved: List[Annotation],
        files: SourceFiles,
        partial: Dict[str, str],
        logs_only: bool,
    ) -> Dict[str, ContextFile]:
        max_chars = self.settings.max_file_chars
        out: Dict[str, ContextFile] = {}
        for path in dict.fromkeys(a.path for a in unresolved if a.path):
            text = files.current(path)
            if text:
                out[path] = context_from_full_text(path, text, max_chars=max_chars)
        for path, fragment in partial.items():
            out[path] = ContextFile(path=path, content=fragment, partial=True)
        if logs_only and not out:
            paths = extract_log_paths(all_log_text(target), limit=self.settings.max_log_extracted_files)
            logger.info("extracted %d file path(s) from logs", len(paths))
            for path in paths:
                text = files.current(path)
                if text:
                    out[path] = context_from_full_text(path, text, max_chars=max_chars)
        return fit_to_budget(out, max_chars)

    def _manual_issue(self, run_id: str, explanation: str, reason: Optional[str]) -> Optional[IssueResult]:
        ensure_manual_label(self.client, self.settings)
        try:
            return self.client.create_issue(
                title=manual_issue_title(run_id),
                body=render_manual_issue_body(
                    repo=self.repo,
                    run_id=run_id,
                    web_base=self.settings.github_web_base,
                    explanation=explanation,
                    reason=reason,
                ),
                labels=[self.settings.manual_label],
            )
        except GitHubApiError as e:
            logger.error("could not open manual-review issue: %s", e)
            return None

    def _head_branch(self, run_id: str) -> str:
        try:
            return str(self.client.get_run(run_id).get("head_branch") or "")
        except GitHubApiError as e:
            logger.warning("could not read run metadata: %s", e)
            return ""

    def _default_branch(self) -> str:
        try:
            return self.client.get_repo_default_branch()
        except GitHubApiError as e:
            logger.warning("could not read default branch, assuming main: %s", e)
            return "main"

    def _event(self, cid: str, event_type: str, payload: Dict[str, Any], *, level: str = "info") -> None:
        self.activity.write(cid, event_type, {"repo": self.repo, **payload}, level=level)

    def _no_output(self, cid: str, run_id: str, reason: str) -> None:
        self._event(cid, "remediation.no_output", {"run_id": run_id, "reason": reason}, level="warning")

    def _result(self, run_id: str, cid: str, outcome: RemediationOutcome, **kwargs: Any) -> RemediationResult:
        return RemediationResult(repo=self.repo, run_id=str(run_id), outcome=outcome, correlation_id=cid, **kwargs)
