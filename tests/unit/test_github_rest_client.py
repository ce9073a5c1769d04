from __future__ import annotations

import base64
from typing import Any, Dict, List

import httpx
import pytest

from selfheal.errors import GitHubApiError
from selfheal.gitops.github_rest import GitHubRestClient


def _client(fake_github, **kw: Any) -> GitHubRestClient:
    return GitHubRestClient(token="t", repo=fake_github.repo, transport=fake_github.transport(), backoff_s=0, **kw)


def test_actions_reads(fake_github) -> None:
    fake_github.runs["42"] = {"id": 42, "head_branch": "feature/x"}
    fake_github.jobs["42"] = [{"id": 7, "name": "build", "conclusion": "failure"}]
    fake_github.annotations[7] = [{"path": "src/a.ts", "annotation_level": "failure", "message": "boom"}]
    fake_github.logs[7] = "line 1\nline 2"
    c = _client(fake_github)

    assert c.get_repo_default_branch() == "main"
    assert c.get_run("42")["head_branch"] == "feature/x"
    assert [j["name"] for j in c.list_run_jobs("42")] == ["build"]
    assert c.list_annotations(7)[0]["message"] == "boom"
    assert c.get_job_logs(7) == "line 1\nline 2"


def test_annotations_none_when_forbidden(fake_github) -> None:
    fake_github.annotations[7] = None
    assert _client(fake_github).list_annotations(7) is None


def test_file_content_and_directory_listing(fake_github) -> None:
    fake_github.files = {"src/A.cs": "class A {}\n", "src/B.cs": "class B {}\n", "src/sub/C.cs": "class C {}\n"}
    c = _client(fake_github)

    assert c.get_file_content(path="src/A.cs", ref="main") == "class A {}\n"
    assert c.get_file_content(path="src/missing.cs", ref="main") is None
    assert [d["path"] for d in c.list_directory(path="src", ref="main")] == ["src/A.cs", "src/B.cs"]
    assert c.list_directory(path="nowhere", ref="main") is None
    assert {t["path"] for t in c.get_tree(ref="main")} == {"src/A.cs", "src/B.cs", "src/sub/C.cs"}


def test_large_file_falls_back_to_blob_api() -> None:
    encoded = base64.b64encode(b"big file").decode("ascii")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/contents/big.json"):
            return httpx.Response(200, json={"type": "file", "sha": "BIGSHA", "content": ""})
        if request.url.path.endswith("/git/blobs/BIGSHA"):
            return httpx.Response(200, json={"content": encoded, "encoding": "base64"})
        return httpx.Response(404, json={"message": "nope"})

    c = GitHubRestClient(token="t", repo="owner/repo", transport=httpx.MockTransport(handler))
    assert c.get_file_content(path="big.json", ref="main") == "big file"


def test_rate_limit_is_retried_with_exponential_backoff() -> None:
    state: Dict[str, Any] = {"calls": 0}
    delays: List[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        state["calls"] += 1
        if state["calls"] < 3:
            return httpx.Response(403, headers={"x-ratelimit-remaining": "0"}, json={"message": "API rate limit exceeded"})
        return httpx.Response(200, json={"default_branch": "develop"})

    c = GitHubRestClient(
        token="t",
        repo="owner/repo",
        transport=httpx.MockTransport(handler),
        max_retries=3,
        backoff_s=1.5,
        sleep=delays.append,
    )
    assert c.get_repo_default_branch() == "develop"
    assert delays == [1.5, 3.0]


def test_rate_limit_exhaustion_raises_rate_limited_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"message": "slow down"})

    c = GitHubRestClient(
        token="t", repo="owner/repo", transport=httpx.MockTransport(handler), max_retries=2, sleep=lambda s: None
    )
    with pytest.raises(GitHubApiError) as ei:
        c.get_run("1")
    assert ei.value.rate_limited is True
    assert ei.value.status_code == 429


def test_plain_403_is_not_retried() -> None:
    state: Dict[str, Any] = {"calls": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        state["calls"] += 1
        return httpx.Response(403, json={"message": "Resource not accessible by integration"})

    c = GitHubRestClient(token="t", repo="owner/repo", transport=httpx.MockTransport(handler), sleep=lambda s: None)
    with pytest.raises(GitHubApiError) as ei:
        c.get_repo_default_branch()
    assert "github_http_403" in str(ei.value)
    assert state["calls"] == 1


def test_git_data_flow_moves_ref_last(fake_github) -> None:
    c = _client(fake_github)
    base = c.get_branch_head_sha(branch="main")
    c.create_branch(new_branch="ai-fix/ci-1", from_sha=base)

    tree = c.get_commit_tree_sha(commit_sha=base)
    blob = c.create_blob(content_text="hello\n")
    new_tree = c.create_tree(base_tree=tree, entries=[{"path": "a.txt", "mode": "100644", "type": "blob", "sha": blob}])
    commit = c.create_commit(message="fix", tree_sha=new_tree, parents=[base])
    assert fake_github.refs["ai-fix/ci-1"] == base

    c.update_ref(branch="ai-fix/ci-1", sha=commit)
    assert fake_github.branch_files("ai-fix/ci-1") == {"a.txt": "hello\n"}


def test_non_fast_forward_ref_update_is_rejected(fake_github) -> None:
    c = _client(fake_github)
    c.create_branch(new_branch="ai-fix/ci-1", from_sha="sha-base")
    orphan = c.create_commit(message="x", tree_sha="tree-base", parents=["somewhere-else"])
    with pytest.raises(GitHubApiError) as ei:
        c.update_ref(branch="ai-fix/ci-1", sha=orphan)
    assert ei.value.status_code == 422
    assert fake_github.refs["ai-fix/ci-1"] == "sha-base"


def test_pull_request_issue_labels_and_rerun(fake_github) -> None:
    c = _client(fake_github)
    c.ensure_label(name="ai-fix", color="7057ff", description="d")
    c.ensure_label(name="ai-fix", color="7057ff", description="d")  # 422 on the second call is fine
    pr = c.create_pull_request(title="fix: x", body="b", head="ai-fix/ci-1", base="main", labels=["ai-fix"])
    assert pr.mode == "real"
    assert pr.pr_url.endswith(f"/pull/{pr.pr_number}")
    assert pr.node_id == f"PR_node_{pr.pr_number}"
    assert fake_github.pr_labels[pr.pr_number] == ["ai-fix"]

    issue = c.create_issue(title="CI failure", body="b", labels=["ci-failure"])
    assert issue.issue_url.endswith(f"/issues/{issue.issue_number}")
    assert fake_github.issues[0]["labels"] == ["ci-failure"]

    c.rerun_failed_jobs(run_id="42")
    assert fake_github.reruns == ["42"]

    assert c.enable_auto_merge(pr_node_id=pr.node_id or "") is True
    assert fake_github.graphql[0]["variables"] == {"pullRequestId": pr.node_id, "mergeMethod": "SQUASH"}


def test_dry_run_skips_every_write(fake_github) -> None:
    c = _client(fake_github, dry_run=True)
    c.create_branch(new_branch="ai-fix/ci-1", from_sha="sha-base")
    assert c.create_blob(content_text="x") == "dry-run-blob"
    c.update_ref(branch="ai-fix/ci-1", sha="dry-run-commit")
    pr = c.create_pull_request(title="t", body="b", head="ai-fix/ci-1", base="main", labels=["ai-fix"])
    issue = c.create_issue(title="t", body="b")
    c.rerun_failed_jobs(run_id="42")

    assert pr.mode == "dry_run" and pr.pr_number == 0
    assert issue.mode == "dry_run"
    assert [m for m, _ in fake_github.calls if m != "GET"] == []
    assert "ai-fix/ci-1" not in fake_github.refs


def test_list_and_merge_pull_requests(fake_github) -> None:
    c = _client(fake_github)
    pr = c.create_pull_request(title="fix: x", body="b", head="ai-fix/ci-1", base="main")
    assert [p["number"] for p in c.list_pull_requests(head="ai-fix/ci-1")] == [pr.pr_number]
    assert c.merge_pull_request(number=pr.pr_number) is True
    assert fake_github.pulls[0]["merged"] is True
    assert c.merge_pull_request(number=999) is False
