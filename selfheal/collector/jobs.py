from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from selfheal.errors import GitHubApiError
from selfheal.gitops.github_rest import GitHubRestClient
from selfheal.models import Annotation, FailedJob
from selfheal.parsers.ci_log import is_generic_signature, normalize_log_path, synthesize_annotations, tail_lines

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorCollector:
    """
    Turns a failed run into FailedJob records: failure annotations per job plus the tail
    of the job log. The runner's own "Process completed with exit code N." annotation is
    dropped; it carries no location. Every API problem degrades to "no data" for that piece.
    """

    client: GitHubRestClient
    max_log_lines: int = 400

    def _annotations(self, job_id: int) -> List[Annotation] | None:
        try:
            raw = self.client.list_annotations(job_id)
        except GitHubApiError as e:
            logger.warning("annotations unavailable for job %s: %s", job_id, e)
            return None
        if raw is None:
            return None
        out: List[Annotation] = []
        for a in raw:
            if a.get("annotation_level") != "failure":
                continue
            ann = Annotation.model_validate(a)
            if is_generic_signature(ann.message):
                continue
            ann.path = normalize_log_path(ann.path)
            out.append(ann)
        return out

    def _logs(self, job_id: int) -> str:
        try:
            return tail_lines(self.client.get_job_logs(job_id), self.max_log_lines)
        except GitHubApiError as e:
            logger.warning("logs unavailable for job %s: %s", job_id, e)
            return ""

    def _to_failed_job(self, job: Dict[str, Any]) -> FailedJob:
        job_id = int(job.get("id") or 0)
        name = str(job.get("name") or f"job-{job_id}")
        log_text = self._logs(job_id)
        annotations = self._annotations(job_id)
        if not annotations and log_text:
            synthesized = synthesize_annotations(log_text)
            if synthesized:
                logger.info("[%s] synthesized %d annotation(s) from logs", name, len(synthesized))
            annotations = synthesized
        annotations = annotations or []
        logger.info("[%s] %d error(s), %d log line(s)", name, len(annotations), len(log_text.splitlines()))
        return FailedJob(id=job_id, name=name, annotations=annotations, log_text=log_text)

    def collect(self, run_id: str) -> List[FailedJob]:
        try:
            jobs = self.client.list_run_jobs(run_id)
        except GitHubApiError as e:
            logger.warning("could not list jobs for run %s: %s", run_id, e)
            return []
        failed = [j for j in jobs if j.get("conclusion") == "failure"]
        logger.info("%d failed job(s): %s", len(failed), ", ".join(str(j.get("name")) for j in failed))
        return [self._to_failed_job(j) for j in failed]


def split_build_jobs(jobs: List[FailedJob]) -> List[FailedJob]:
    """Build/test jobs, or every job when only lint/quality jobs failed."""
    build = [j for j in jobs if "quality" not in j.name.lower() and "lint" not in j.name.lower()]
    return build or list(jobs)
