import json
import threading
import time

import pytest

from patchpilot.config_loader import AgentConfig, ExecutorConfig, GatewayConfig, PatchPilotConfig
from patchpilot.gateway import CompletionGateway
from patchpilot.ledger import AuditLedger
from patchpilot.providers import CompletionProvider, CompletionRequest, ProviderResponse
from patchpilot.scm import (
    BranchRef,
    Comment,
    FileCommit,
    FileContent,
    FileNotFoundInRepo,
    MergeResult,
    PullRequest,
    SourceControlError,
)

# System-prompt markers, one per prompt template
ANALYZE = "software architect"
PLAN = "planning software"
GENERATE = "production-ready code"
FIX = "expert debugger"
REFACTOR = "code refactoring"
TESTS = "test suites"
REVIEW = "senior code reviewer"


ORIGINAL = "def average(values):\n    return sum(values) / len(values)\n"
FIXED = "def average(values):\n    if not values:\n        return 0.0\n    return sum(values) / len(values)\n"


class StubProvider(CompletionProvider):
    """Scripted backend. Replies are picked by a marker in the system prompt."""

    name = "stub"
    pricing = {"stub-model": (1.0, 2.0)}

    def __init__(self, replies=None, model="stub-model", delay=0.0, error=None):
        super().__init__(model)
        self.replies = replies or {}
        self.delay = delay
        self.error = error
        self.requests: list[CompletionRequest] = []
        self._lock = threading.Lock()

    def _reply(self, request):
        with self._lock:
            self.requests.append(request)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        for marker, reply in self.replies.items():
            if marker in request.system_prompt:
                return reply(request) if callable(reply) else reply
        return "{}"

    def _response(self, request, text):
        return ProviderResponse(
            text=text,
            prompt_tokens=100,
            completion_tokens=50,
            stop_reason="stop",
            model=request.model or self.default_model,
        )

    def complete(self, request):
        return self._response(request, self._reply(request))

    def stream(self, request):
        text = self._reply(request)
        for i in range(0, len(text), 8):
            yield text[i:i + 8]
        return self._response(request, text)


def agent_replies(**overrides):
    """Well-formed replies for every agent phase; override any of them by marker."""
    replies = {
        ANALYZE: json.dumps({
            "task_type": "fix",
            "complexity": "low",
            "estimated_lines": 4,
            "language": "python",
            "required_changes": ["guard empty input"],
        }),
        PLAN: json.dumps({
            "steps": [{"order": 1, "action": "Add guard clause", "tool": "write_file"}],
            "estimated_duration": "5 minutes",
            "risks": ["callers may rely on ZeroDivisionError"],
        }),
        FIX: json.dumps({"fixed_code": FIXED, "explanation": "Return 0.0 for an empty list."}),
        GENERATE: json.dumps({"code": "def greet(name):\n    return f'hello {name}'\n", "explanation": "Greeting."}),
        REFACTOR: json.dumps({"refactored_code": FIXED, "changes": ["Guard empty input"]}),
        TESTS: json.dumps({
            "test_code": "from stats import average\n\n\ndef test_average():\n    assert average([2, 4]) == 3\n",
            "cases": ["average of two numbers"],
        }),
        REVIEW: json.dumps({
            "summary": "Divides by zero on empty input.",
            "issues": ["ZeroDivisionError for []"],
            "suggestions": ["Guard the empty case"],
            "security_concerns": [],
            "rating": 6,
        }),
    }
    replies.update({k: v for k, v in overrides.items()})
    return replies


@pytest.fixture
def config():
    return PatchPilotConfig(
        gateway=GatewayConfig(default_provider="stub", max_requests=1000, window_seconds=60),
        agent=AgentConfig(run_tests=False),
        executor=ExecutorConfig(
            owner="acme",
            repo="service",
            merge_delay_seconds=0,
            mergeable_poll_attempts=3,
            mergeable_poll_interval_seconds=0,
        ),
    )


@pytest.fixture
def make_gateway(config):
    def _make(replies=None, provider=None):
        stub = provider or StubProvider(replies if replies is not None else agent_replies())
        return CompletionGateway(config, providers={"stub": stub})
    return _make


@pytest.fixture
def ledger():
    return AuditLedger()


# ---------------------------------------------------------------------------
# Source control double
# ---------------------------------------------------------------------------

class FakeGitHub:
    """In-memory stand-in for GitHubClient."""

    def __init__(self, files=None):
        self.default_branch = "main"
        self.branches = {"main"}
        self.files = {("main", path): content for path, content in (files or {}).items()}
        self.pulls: dict[int, PullRequest] = {}
        self.comments: list[tuple[int, str]] = []
        self.deleted: list[str] = []
        self.diff = ""
        self.fail_paths: set[str] = set()
        self.fail_branch = False
        self.fail_pr = False
        self.merge_error: Exception | None = None
        self.mergeable: list[bool | None] = []
        self.pr_reads = 0
        self._commits = 0

    def get_default_branch(self):
        return self.default_branch

    def create_branch(self, name, from_branch=None):
        if self.fail_branch:
            raise SourceControlError(403, "Resource not accessible by integration")
        exists = name in self.branches
        self.branches.add(name)
        base = from_branch or self.default_branch
        for (branch, path), content in list(self.files.items()):
            if branch == base:
                self.files[(name, path)] = content
        return BranchRef(branch=name, sha="base-sha", exists=exists)

    def delete_branch(self, name):
        self.branches.discard(name)
        self.deleted.append(name)

    def read_file(self, path, ref=None):
        key = (ref or self.default_branch, path)
        if key not in self.files:
            raise FileNotFoundInRepo(path, ref)
        return FileContent(path=path, content=self.files[key], sha=f"blob-{path}")

    def write_file(self, path, content, message, branch, sha=None):
        if path in self.fail_paths:
            raise SourceControlError(409, f"{path} does not match")
        self.files[(branch, path)] = content
        self._commits += 1
        return FileCommit(path=path, sha=f"blob-{self._commits}", commit=f"commit{self._commits:04d}")

    def open_pull_request(self, title, body, head, base, draft=True):
        if self.fail_pr:
            raise SourceControlError(422, "No commits between main and head")
        number = len(self.pulls) + 1
        pr = PullRequest(
            number=number, title=title, body=body, draft=draft, head=head, base=base,
            url=f"https://github.com/acme/service/pull/{number}",
        )
        self.pulls[number] = pr
        return pr

    def get_pull_request(self, number):
        self.pr_reads += 1
        pr = self.pulls[number]
        mergeable = self.mergeable.pop(0) if self.mergeable else True
        return pr.model_copy(update={"mergeable": mergeable})

    def get_pull_request_diff(self, number):
        return self.diff

    def add_comment(self, number, body):
        self.comments.append((number, body))
        return Comment(id=len(self.comments), url=f"https://github.com/acme/service/pull/{number}#c{len(self.comments)}")

    def merge_pull_request(self, number, commit_title=None, method="squash"):
        if self.merge_error:
            raise self.merge_error
        self.pulls[number] = self.pulls[number].model_copy(update={"merged": True, "state": "closed"})
        return MergeResult(merged=True, sha="merge-sha", message="Pull Request successfully merged")


@pytest.fixture
def github():
    return FakeGitHub(files={"src/stats.py": ORIGINAL})
