from __future__ import annotations

import base64
import json
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from selfheal.procs.runner import ProcessResult


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Keep tests deterministic and isolated from developer machine env.
    """
    for k in list(os.environ.keys()):
        if k.startswith("SELFHEAL_"):
            monkeypatch.delenv(k, raising=False)


@dataclass
class FakeProcessRunner:
    """
    In-memory ProcessRunner: answers are looked up by longest command prefix, every call is recorded.
    """

    responses: Dict[str, ProcessResult]
    default: ProcessResult = ProcessResult(stdout="", exit_code=0)

    def __post_init__(self) -> None:
        self.calls: List[Dict[str, object]] = []

    def run(
        self,
        command: List[str],
        *,
        cwd: str | None = None,
        timeout_s: float | None = None,
        input_text: str | None = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessResult:
        joined = " ".join(command)
        self.calls.append({"command": joined, "cwd": cwd, "timeout_s": timeout_s, "input_text": input_text})
        best: str | None = None
        for prefix in self.responses:
            if joined.startswith(prefix) and (best is None or len(prefix) > len(best)):
                best = prefix
        return self.responses[best] if best is not None else self.default


class FakeGitHub:
    """
    In-memory GitHub for one repository, served through httpx.MockTransport.

    Tests seed runs/jobs/annotations/logs/files and inspect pulls/issues/reruns/refs afterwards.
    `fail[(method, path_prefix)] = status` forces an error response for matching calls.
    """

    def __init__(self, repo: str = "acme/widgets") -> None:
        self.repo = repo
        self.default_branch = "main"
        self.runs: Dict[str, Dict[str, Any]] = {}
        self.jobs: Dict[str, List[Dict[str, Any]]] = {}
        # job id -> list of annotation dicts, or None to answer 403
        self.annotations: Dict[int, Optional[List[Dict[str, Any]]]] = {}
        self.logs: Dict[int, str] = {}
        self.files: Dict[str, str] = {}
        self.refs: Dict[str, str] = {"main": "sha-base"}
        self.commits: Dict[str, Dict[str, Any]] = {"sha-base": {"tree": "tree-base", "parents": [], "message": "init"}}
        self.blobs: Dict[str, str] = {}
        self.trees: Dict[str, List[Dict[str, Any]]] = {}
        self.pulls: List[Dict[str, Any]] = []
        self.issues: List[Dict[str, Any]] = []
        self.labels: List[str] = []
        self.pr_labels: Dict[int, List[str]] = {}
        self.reruns: List[str] = []
        self.graphql: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, str]] = []
        self.fail: Dict[Tuple[str, str], int] = {}
        self._seq = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def _next(self, kind: str) -> str:
        self._seq += 1
        return f"{kind}-{self._seq}"

    def branch_files(self, branch: str) -> Dict[str, str]:
        commit = self.commits[self.refs[branch]]
        return {e["path"]: self.blobs[e["sha"]] for e in self.trees.get(commit["tree"], [])}

    def _contents(self, path: str) -> httpx.Response:
        path = path.strip("/")
        if path in self.files:
            raw = base64.b64encode(self.files[path].encode("utf-8")).decode("ascii")
            return httpx.Response(200, json={"type": "file", "path": path, "sha": f"blob-of-{path}", "content": raw})
        prefix = f"{path}/" if path else ""
        children = [p for p in self.files if p.startswith(prefix) and "/" not in p[len(prefix) :]]
        if not children:
            return httpx.Response(404, json={"message": "Not Found"})
        return httpx.Response(
            200,
            json=[
                {"name": p.rsplit("/", 1)[-1], "path": p, "type": "file", "size": len(self.files[p].encode("utf-8"))}
                for p in sorted(children)
            ],
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.calls.append((method, path))

        if path == "/graphql":
            self.graphql.append(json.loads(request.content))
            return httpx.Response(200, json={"data": {"enablePullRequestAutoMerge": {"pullRequest": {"number": 1}}}})

        prefix = f"/repos/{self.repo}"
        if not path.startswith(prefix):
            return httpx.Response(404, json={"message": "Not Found"})
        rest = path[len(prefix) :]

        for (m, pat), status in self.fail.items():
            if m == method and rest.startswith(pat):
                return httpx.Response(status, json={"message": "forced failure"})

        body: Dict[str, Any] = json.loads(request.content) if request.content else {}

        if method == "GET":
            if rest == "":
                return httpx.Response(200, json={"default_branch": self.default_branch})
            m = re.fullmatch(r"/actions/runs/(\w+)", rest)
            if m:
                return httpx.Response(200, json=self.runs.get(m.group(1), {"id": m.group(1), "head_branch": "main"}))
            m = re.fullmatch(r"/actions/runs/(\w+)/jobs", rest)
            if m:
                return httpx.Response(200, json={"jobs": self.jobs.get(m.group(1), [])})
            m = re.fullmatch(r"/check-runs/(\d+)/annotations", rest)
            if m:
                anns = self.annotations.get(int(m.group(1)), [])
                if anns is None:
                    return httpx.Response(403, json={"message": "Resource not accessible by integration"})
                return httpx.Response(200, json=anns)
            m = re.fullmatch(r"/actions/jobs/(\d+)/logs", rest)
            if m:
                return httpx.Response(200, text=self.logs.get(int(m.group(1)), ""))
            m = re.fullmatch(r"/contents/?(.*)", rest)
            if m:
                return self._contents(m.group(1))
            m = re.fullmatch(r"/git/trees/(.+)", rest)
            if m:
                return httpx.Response(
                    200,
                    json={
                        "tree": [
                            {"path": p, "type": "blob", "size": len(c.encode("utf-8"))} for p, c in sorted(self.files.items())
                        ]
                    },
                )
            m = re.fullmatch(r"/git/ref/heads/(.+)", rest)
            if m:
                sha = self.refs.get(m.group(1))
                if sha is None:
                    return httpx.Response(404, json={"message": "Not Found"})
                return httpx.Response(200, json={"ref": f"refs/heads/{m.group(1)}", "object": {"sha": sha}})
            m = re.fullmatch(r"/git/commits/(.+)", rest)
            if m:
                commit = self.commits.get(m.group(1))
                if commit is None:
                    return httpx.Response(404, json={"message": "Not Found"})
                return httpx.Response(200, json={"sha": m.group(1), "tree": {"sha": commit["tree"]}})
            if rest == "/pulls":
                return httpx.Response(200, json=self.pulls)

        if method == "POST":
            if rest == "/git/refs":
                self.refs[body["ref"].removeprefix("refs/heads/")] = body["sha"]
                return httpx.Response(201, json={"ref": body["ref"], "object": {"sha": body["sha"]}})
            if rest == "/git/blobs":
                sha = self._next("blob")
                self.blobs[sha] = base64.b64decode(body["content"]).decode("utf-8")
                return httpx.Response(201, json={"sha": sha})
            if rest == "/git/trees":
                sha = self._next("tree")
                self.trees[sha] = list(body["tree"])
                return httpx.Response(201, json={"sha": sha})
            if rest == "/git/commits":
                sha = self._next("commit")
                self.commits[sha] = {"tree": body["tree"], "parents": body["parents"], "message": body["message"]}
                return httpx.Response(201, json={"sha": sha})
            if rest == "/pulls":
                number = 100 + len(self.pulls) + 1
                pr = {
                    "number": number,
                    "title": body["title"],
                    "body": body["body"],
                    "head": body["head"],
                    "base": body["base"],
                    "html_url": f"https://github.com/{self.repo}/pull/{number}",
                    "node_id": f"PR_node_{number}",
                }
                self.pulls.append(pr)
                return httpx.Response(201, json=pr)
            m = re.fullmatch(r"/issues/(\d+)/labels", rest)
            if m:
                self.pr_labels.setdefault(int(m.group(1)), []).extend(body["labels"])
                return httpx.Response(200, json=[{"name": n} for n in body["labels"]])
            if rest == "/labels":
                if body["name"] in self.labels:
                    return httpx.Response(422, json={"message": "Validation Failed"})
                self.labels.append(body["name"])
                return httpx.Response(201, json={"name": body["name"]})
            if rest == "/issues":
                number = 500 + len(self.issues) + 1
                issue = dict(body, number=number, html_url=f"https://github.com/{self.repo}/issues/{number}")
                self.issues.append(issue)
                return httpx.Response(201, json=issue)
            m = re.fullmatch(r"/actions/runs/(\w+)/rerun-failed-jobs", rest)
            if m:
                self.reruns.append(m.group(1))
                return httpx.Response(201, json={})

        if method == "PUT":
            m = re.fullmatch(r"/pulls/(\d+)/merge", rest)
            if m:
                pr = next((p for p in self.pulls if p["number"] == int(m.group(1))), None)
                if pr is None:
                    return httpx.Response(404, json={"message": "Not Found"})
                pr["merged"] = True
                return httpx.Response(200, json={"merged": True, "sha": self._next("merge")})

        if method == "PATCH":
            m = re.fullmatch(r"/git/refs/heads/(.+)", rest)
            if m:
                branch = m.group(1)
                if branch not in self.refs:
                    return httpx.Response(422, json={"message": "Reference does not exist"})
                parents = self.commits.get(body["sha"], {}).get("parents", [])
                if not body.get("force") and self.refs[branch] not in parents:
                    return httpx.Response(422, json={"message": "Update is not a fast forward"})
                self.refs[branch] = body["sha"]
                return httpx.Response(200, json={"object": {"sha": body["sha"]}})

        return httpx.Response(404, json={"message": "Not Found"})


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()
