"""
Hosted source-control client (GitHub REST API).

Thin, typed wrapper over the endpoints the execution engine needs. File
contents cross the wire base64-encoded; callers only ever see text.
Every non-2xx response becomes a SourceControlError carrying the status.
"""

from __future__ import annotations

import base64
from typing import Any

import requests
from loguru import logger
from pydantic import BaseModel


class SourceControlError(Exception):
    def __init__(self, status: int | None, message: str):
        self.status = status
        super().__init__(f"[{status}] {message}" if status else message)


class FileNotFoundInRepo(SourceControlError):
    def __init__(self, path: str, ref: str | None = None):
        self.path = path
        super().__init__(404, f"{path} not found" + (f" at {ref}" if ref else ""))


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class FileContent(BaseModel):
    path: str
    content: str
    sha: str
    size: int = 0


class FileCommit(BaseModel):
    path: str
    sha: str
    commit: str


class BranchRef(BaseModel):
    branch: str
    sha: str | None = None
    exists: bool = False


class PullRequest(BaseModel):
    number: int
    title: str = ""
    body: str | None = None
    state: str = "open"
    draft: bool = False
    merged: bool = False
    mergeable: bool | None = None
    head: str = ""
    base: str = ""
    url: str = ""
    author: str | None = None


class MergeResult(BaseModel):
    merged: bool
    sha: str | None = None
    message: str = ""


class Comment(BaseModel):
    id: int
    url: str = ""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class GitHubClient:
    def __init__(
        self,
        owner: str,
        repo: str,
        token: str | None = None,
        base_url: str = "https://api.github.com",
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ):
        self.owner = owner
        self.repo = repo
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def _url(self, path: str) -> str:
        return f"{self.base_url}/repos/{self.owner}/{self.repo}{path}"

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise SourceControlError(None, f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            logger.debug(f"[SCM] {method} {path} → {response.status_code}: {message}")
            raise SourceControlError(response.status_code, message)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    @staticmethod
    def _pull_request(data: dict[str, Any]) -> PullRequest:
        return PullRequest(
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body"),
            state=data.get("state", "open"),
            draft=bool(data.get("draft")),
            merged=bool(data.get("merged")),
            mergeable=data.get("mergeable"),
            head=(data.get("head") or {}).get("ref", ""),
            base=(data.get("base") or {}).get("ref", ""),
            url=data.get("html_url", ""),
            author=(data.get("user") or {}).get("login"),
        )

    # -- Repository ---------------------------------------------------------

    def get_default_branch(self) -> str:
        return self._request("GET", "")["default_branch"]

    # -- Files --------------------------------------------------------------

    def read_file(self, path: str, ref: str | None = None) -> FileContent:
        params = {"ref": ref} if ref else None
        try:
            data = self._request("GET", f"/contents/{path}", params=params)
        except SourceControlError as e:
            if e.status == 404:
                raise FileNotFoundInRepo(path, ref) from e
            raise

        if isinstance(data, list):
            raise SourceControlError(None, f"{path} is a directory")

        content = base64.b64decode(data.get("content", "")).decode("utf-8")
        return FileContent(path=data["path"], content=content, sha=data["sha"], size=data.get("size", 0))

    def write_file(self, path: str, content: str, message: str, branch: str, sha: str | None = None) -> FileCommit:
        payload = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha:
            payload["sha"] = sha

        data = self._request("PUT", f"/contents/{path}", json=payload)
        logger.debug(f"[SCM] Wrote {path} on {branch}")
        return FileCommit(path=path, sha=data["content"]["sha"], commit=data["commit"]["sha"])

    # -- Branches -----------------------------------------------------------

    def branch_sha(self, branch: str) -> str:
        return self._request("GET", f"/git/ref/heads/{branch}")["object"]["sha"]

    def create_branch(self, name: str, from_branch: str | None = None) -> BranchRef:
        """Create `name` from `from_branch`. An existing branch is reported, not raised."""
        base = from_branch or self.get_default_branch()
        sha = self.branch_sha(base)

        try:
            self._request("POST", "/git/refs", json={"ref": f"refs/heads/{name}", "sha": sha})
        except SourceControlError as e:
            if e.status == 422 and "already exists" in str(e):
                logger.info(f"[SCM] Branch {name} already exists")
                return BranchRef(branch=name, sha=sha, exists=True)
            raise

        logger.info(f"[SCM] Created branch {name} from {base}")
        return BranchRef(branch=name, sha=sha, exists=False)

    def delete_branch(self, name: str) -> None:
        self._request("DELETE", f"/git/refs/heads/{name}")
        logger.info(f"[SCM] Deleted branch {name}")

    # -- Pull requests ------------------------------------------------------

    def open_pull_request(self, title: str, body: str, head: str, base: str, draft: bool = True) -> PullRequest:
        data = self._request("POST", "/pulls", json={
            "title": title,
            "body": body,
            "head": head,
            "base": base,
            "draft": draft,
        })
        pr = self._pull_request(data)
        logger.info(f"[SCM] Opened PR #{pr.number} ({head} → {base})")
        return pr

    def update_pull_request(
        self,
        number: int,
        title: str | None = None,
        body: str | None = None,
        state: str | None = None,
    ) -> PullRequest:
        payload = {k: v for k, v in {"title": title, "body": body, "state": state}.items() if v is not None}
        return self._pull_request(self._request("PATCH", f"/pulls/{number}", json=payload))

    def get_pull_request(self, number: int) -> PullRequest:
        return self._pull_request(self._request("GET", f"/pulls/{number}"))

    def get_pull_request_diff(self, number: int) -> str:
        try:
            response = self.session.get(
                self._url(f"/pulls/{number}"),
                headers={"Accept": "application/vnd.github.v3.diff"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise SourceControlError(None, f"GET /pulls/{number} diff failed: {e}") from e
        if response.status_code >= 400:
            raise SourceControlError(response.status_code, response.text)
        return response.text

    def add_comment(self, number: int, body: str) -> Comment:
        data = self._request("POST", f"/issues/{number}/comments", json={"body": body})
        return Comment(id=data["id"], url=data.get("html_url", ""))

    def merge_pull_request(self, number: int, commit_title: str | None = None, method: str = "squash") -> MergeResult:
        payload: dict[str, Any] = {"merge_method": method}
        if commit_title:
            payload["commit_title"] = commit_title
        data = self._request("PUT", f"/pulls/{number}/merge", json=payload)
        return MergeResult(merged=bool(data.get("merged")), sha=data.get("sha"), message=data.get("message", ""))
