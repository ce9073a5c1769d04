from __future__ import annotations

import logging

from selfheal.errors import GitHubApiError
from selfheal.gitops.github_rest import GitHubRestClient
from selfheal.settings import Settings

logger = logging.getLogger(__name__)


def ensure_fix_label(client: GitHubRestClient, settings: Settings) -> None:
    _ensure(client, settings.fix_label, "7057ff", "Auto-generated CI fix")


def ensure_manual_label(client: GitHubRestClient, settings: Settings) -> None:
    _ensure(client, settings.manual_label, "e11d48", "CI failure requiring manual fix")


def ensure_escalation_label(client: GitHubRestClient, settings: Settings) -> None:
    _ensure(client, settings.escalation_label, "b60205", "Repeated CI failure escalated to a human")


def _ensure(client: GitHubRestClient, name: str, color: str, description: str) -> None:
    # A missing label only costs us the tag; the PR or issue still goes out unlabeled.
    try:
        client.ensure_label(name=name, color=color, description=description)
    except GitHubApiError as e:
        logger.warning("could not ensure label %s: %s", name, e)
