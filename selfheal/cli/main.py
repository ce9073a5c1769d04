from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from selfheal.errors import SelfHealError
from selfheal.memory.cooldowns import CooldownTracker
from selfheal.service.orchestrator import RemediationOrchestrator
from selfheal.settings import Settings

logger = logging.getLogger("selfheal")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _repo(value: str) -> str:
    if value.count("/") != 1 or not all(value.split("/")):
        raise argparse.ArgumentTypeError(f"expected owner/name, got {value!r}")
    return value


def main(argv: Optional[List[str]] = None) -> int:
    """`selfheal --repo owner/name --run-id 123`: remediate one failed CI run."""
    ap = argparse.ArgumentParser(prog="selfheal", description="Remediate a failed CI run.")
    ap.add_argument("--repo", required=True, type=_repo, help="owner/name")
    ap.add_argument("--run-id", required=True, help="workflow run id")
    ap.add_argument("--dry-run", action="store_true", help="read everything, write nothing to the hosting platform")
    ap.add_argument("--log-level", default="INFO")
    args = ap.parse_args(argv)

    _configure_logging(args.log_level)
    settings = Settings()
    if args.dry_run:
        settings = settings.model_copy(update={"dry_run": True})

    try:
        result = RemediationOrchestrator.from_settings(settings, repo=args.repo).remediate(str(args.run_id))
    except SelfHealError as e:
        logger.error("remediation failed: %s", e)
        return 1
    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0


def reset_main(argv: Optional[List[str]] = None) -> int:
    """`selfheal-reset --repo owner/name --signature "..."`: clear a cooldown/escalation entry."""
    ap = argparse.ArgumentParser(prog="selfheal-reset", description="Clear the cooldown/escalation entry for a signature.")
    ap.add_argument("--repo", required=True, type=_repo, help="owner/name")
    ap.add_argument("--signature", required=True, help="error signature exactly as shown in the escalation issue")
    ap.add_argument("--log-level", default="INFO")
    args = ap.parse_args(argv)

    _configure_logging(args.log_level)
    tracker = CooldownTracker.from_settings(Settings())
    if tracker.reset(args.repo, args.signature):
        print(f"cleared {args.repo}: {args.signature}")
        return 0
    print(f"no entry for {args.repo}: {args.signature}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
