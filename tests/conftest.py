import base64
import hashlib
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, overload

import httpx
import pytest
from githubkit import GitHub
from githubkit.exception import RequestFailed
from githubkit.response import Response
from pydantic import BaseModel

from github_digest_mcp.cache.store import DiskCacheStore
from github_digest_mcp.clients.github import GitHubRepositoryClient, new_githubkit_client
from github_digest_mcp.clients.retry import RetryPolicy
from github_digest_mcp.gateway import DigestGateway
from github_digest_mcp.models.repository.identity import RepositoryIdentity

TEST_TOKEN = "test-token"  # noqa: S105

GITHUB_API_URL = "https://api.github.com"
TIMESTAMP = "2024-01-02T03:04:05Z"

USER_URL_FIELDS = ("followers", "following", "gists", "starred", "subscriptions", "organizations", "repos", "events", "received_events")

REPOSITORY_URL_FIELDS = (
    "archive", "assignees", "blobs", "branches", "collaborators", "comments", "commits", "compare", "contents", "contributors",
    "deployments", "downloads", "events", "forks", "git_commits", "git_refs", "git_tags", "hooks", "issue_comment", "issue_events",
    "issues", "keys", "labels", "languages", "merges", "milestones", "notifications", "pulls", "releases", "stargazers", "statuses",
    "subscribers", "subscription", "tags", "teams", "trees",
)  # fmt: skip


def blob_sha(path: str) -> str:
    return hashlib.sha1(path.encode("utf-8")).hexdigest()  # noqa: S324


def request_failed(status_code: int, headers: dict[str, str] | None = None) -> RequestFailed:
    request = httpx.Request(method="GET", url=f"{GITHUB_API_URL}/repos/acme/widget")
    response = httpx.Response(status_code=status_code, headers=headers, json={"message": "failure"}, request=request)
    return RequestFailed(Response(response, Any))


def user_payload(login: str) -> dict[str, Any]:
    api_url = f"{GITHUB_API_URL}/users/{login}"
    return {
        "login": login,
        "id": 1,
        "node_id": f"U_{login}",
        "avatar_url": f"https://avatars.githubusercontent.com/{login}",
        "gravatar_id": "",
        "url": api_url,
        "html_url": f"https://github.com/{login}",
        **{f"{field}_url": f"{api_url}/{field}" for field in USER_URL_FIELDS},
        "type": "Organization",
        "user_view_type": "public",
        "site_admin": False,
    }


def repository_payload(
    owner: str,
    repo: str,
    description: str | None = None,
    default_branch: str = "main",
    size: int = 100,
    language: str | None = None,
    license_name: str | None = None,
    stars: int = 42,
) -> dict[str, Any]:
    """A `GET /repos/{owner}/{repo}` response body."""

    api_url = f"{GITHUB_API_URL}/repos/{owner}/{repo}"
    license_payload: dict[str, Any] | None = None
    if license_name:
        license_payload = {
            "key": "mit",
            "name": license_name,
            "spdx_id": "MIT",
            "url": f"{GITHUB_API_URL}/licenses/mit",
            "node_id": "L_mit",
            "html_url": "https://choosealicense.com/licenses/mit/",
        }

    return {
        "id": 1,
        "node_id": f"R_{owner}_{repo}",
        "name": repo,
        "full_name": f"{owner}/{repo}",
        "owner": user_payload(owner),
        "private": False,
        "html_url": f"https://github.com/{owner}/{repo}",
        "description": description,
        "fork": False,
        "url": api_url,
        **{f"{field}_url": f"{api_url}/{field}" for field in REPOSITORY_URL_FIELDS},
        "git_url": f"git://github.com/{owner}/{repo}.git",
        "ssh_url": f"git@github.com:{owner}/{repo}.git",
        "clone_url": f"https://github.com/{owner}/{repo}.git",
        "svn_url": f"https://github.com/{owner}/{repo}",
        "mirror_url": None,
        "homepage": None,
        "language": language,
        "forks_count": 0,
        "forks": 0,
        "stargazers_count": stars,
        "watchers_count": stars,
        "watchers": stars,
        "subscribers_count": 1,
        "network_count": 0,
        "size": size,
        "default_branch": default_branch,
        "open_issues_count": 0,
        "open_issues": 0,
        "is_template": False,
        "topics": [],
        "has_issues": True,
        "has_projects": True,
        "has_wiki": True,
        "has_pages": False,
        "has_downloads": True,
        "has_discussions": False,
        "archived": False,
        "disabled": False,
        "visibility": "public",
        "pushed_at": TIMESTAMP,
        "created_at": TIMESTAMP,
        "updated_at": TIMESTAMP,
        "allow_forking": True,
        "web_commit_signoff_required": False,
        "license": license_payload,
    }


def tree_item_payload(path: str, kind: str, sha: str, size: int | None = None) -> dict[str, Any]:
    mode: str = {"blob": "100644", "tree": "040000", "commit": "160000"}[kind]
    tree_item: dict[str, Any] = {"path": path, "mode": mode, "type": kind, "sha": sha, "url": f"{GITHUB_API_URL}/git/{sha}"}
    if size is not None:
        tree_item["size"] = size
    return tree_item


def blob_payload(sha: str, content: bytes) -> dict[str, Any]:
    """A `GET /repos/{owner}/{repo}/git/blobs/{file_sha}` response body."""

    return {
        "sha": sha,
        "node_id": f"B_{sha}",
        "url": f"{GITHUB_API_URL}/git/blobs/{sha}",
        "size": len(content),
        "content": base64.b64encode(content).decode("ascii"),
        "encoding": "base64",
    }


class FakeRepository(BaseModel):
    owner: str
    repo: str
    description: str | None = None
    default_branch: str = "main"
    size: int = 100
    language: str | None = None
    license_name: str | None = None
    files: dict[str, str] = {}
    sizes: dict[str, int] = {}
    directories: list[str] = []
    truncated: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def metadata_payload(self) -> dict[str, Any]:
        return repository_payload(
            owner=self.owner,
            repo=self.repo,
            description=self.description,
            default_branch=self.default_branch,
            size=self.size,
            language=self.language,
            license_name=self.license_name,
        )

    def tree_payload(self) -> dict[str, Any]:
        tree: list[dict[str, Any]] = [
            tree_item_payload(path=directory, kind="tree", sha=blob_sha(directory)) for directory in self.directories
        ]
        tree.extend(
            tree_item_payload(path=path, kind="blob", sha=blob_sha(path), size=self.sizes.get(path, len(content.encode("utf-8"))))
            for path, content in self.files.items()
        )
        sha: str = blob_sha(self.default_branch)
        return {"sha": sha, "url": f"{GITHUB_API_URL}/repos/{self.full_name}/git/trees/{sha}", "tree": tree, "truncated": self.truncated}

    def blob_payload(self, sha: str) -> dict[str, Any] | None:
        for path, content in self.files.items():
            if blob_sha(path) == sha:
                return blob_payload(sha=sha, content=content.encode("utf-8"))
        return None


class FakeGitHubApi:
    """An in-memory GitHub REST API serving repositories, trees and blobs over an `httpx.MockTransport`.

    Failures can be queued per URL path: each request to the path consumes one queued failure, which is either a
    status code or an exception to raise. Moved repositories answer their old name with a permanent redirect.
    """

    def __init__(self):
        self.repositories: dict[str, FakeRepository] = {}
        self.moved_repositories: dict[str, FakeRepository] = {}
        self.redirects: dict[str, str] = {}
        self.failures: dict[str, list[int | Exception]] = {}
        self.requests: list[httpx.Request] = []

    def add_repository(self, repository: FakeRepository) -> FakeRepository:
        self.repositories[repository.full_name] = repository
        return repository

    def move_repository(self, old_full_name: str, repository: FakeRepository) -> None:
        repository_id = str(len(self.moved_repositories) + 1)
        self.moved_repositories[repository_id] = repository
        self.redirects[f"/repos/{old_full_name}"] = f"{GITHUB_API_URL}/repositories/{repository_id}"

    def fail(self, path: str, *failures: int | Exception) -> None:
        self.failures.setdefault(path, []).extend(failures)

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if queued_failures := self.failures.get(request.url.path):
            failure: int | Exception = queued_failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return httpx.Response(status_code=failure, json={"message": "failure"})

        if location := self.redirects.get(request.url.path):
            return httpx.Response(status_code=301, headers={"Location": location}, json={"message": "Moved Permanently", "url": location})

        parts: list[str] = request.url.path.strip("/").split("/")

        if parts[0] == "repositories" and (moved_repository := self.moved_repositories.get(parts[1])):
            return httpx.Response(status_code=200, json=moved_repository.metadata_payload())

        repository: FakeRepository | None = self.repositories.get("/".join(parts[1:3]))

        if parts[0] != "repos" or repository is None:
            return httpx.Response(status_code=404, json={"message": "Not Found"})

        if len(parts) == 3:
            return httpx.Response(status_code=200, json=repository.metadata_payload())

        if parts[3:5] == ["git", "trees"] and parts[5] == repository.default_branch:
            return httpx.Response(status_code=200, json=repository.tree_payload())

        if parts[3:5] == ["git", "blobs"] and (repository_blob := repository.blob_payload(parts[5])):
            return httpx.Response(status_code=200, json=repository_blob)

        return httpx.Response(status_code=404, json={"message": "Not Found"})


class RecordingSleeper:
    """Stands in for `asyncio.sleep` in retry policies and records the requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    def __init__(self, now: datetime | None = None):
        self.now: datetime = now or datetime.now(tz=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture
def fake_github_api() -> FakeGitHubApi:
    return FakeGitHubApi()


@pytest.fixture
def sleeper() -> RecordingSleeper:
    return RecordingSleeper()


@pytest.fixture
def fast_retry_policy(sleeper: RecordingSleeper) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, sleep=sleeper)


@pytest.fixture
def githubkit_client(fake_github_api: FakeGitHubApi) -> GitHub[Any]:
    return new_githubkit_client(token=TEST_TOKEN, async_transport=fake_github_api.transport)


@pytest.fixture
def github_client(githubkit_client: GitHub[Any], fast_retry_policy: RetryPolicy) -> GitHubRepositoryClient:
    return GitHubRepositoryClient(
        githubkit_client=githubkit_client,
        metadata_retry_policy=fast_retry_policy,
        tree_retry_policy=fast_retry_policy,
        blob_retry_policy=fast_retry_policy.with_overrides(max_attempts=2),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_store(tmp_path: Path, clock: FakeClock) -> DiskCacheStore:
    return DiskCacheStore(cache_dir=tmp_path / "digests", clock=clock)


@pytest.fixture
def github_gateway(cache_store: DiskCacheStore, fake_github_api: FakeGitHubApi, fast_retry_policy: RetryPolicy) -> DigestGateway:
    """A gateway whose fetchers talk to the fake GitHub API."""

    def factory(auth_token: str) -> GitHubRepositoryClient:
        return GitHubRepositoryClient(
            githubkit_client=new_githubkit_client(token=auth_token, async_transport=fake_github_api.transport),
            metadata_retry_policy=fast_retry_policy,
            tree_retry_policy=fast_retry_policy,
            blob_retry_policy=fast_retry_policy,
        )

    return DigestGateway(cache_store=cache_store, fetcher_factory=factory, token_provider=lambda: TEST_TOKEN)


# Test Data


@pytest.fixture
def acme_widget_identity() -> RepositoryIdentity:
    return RepositoryIdentity(owner="acme", repo="widget")


@pytest.fixture
def acme_widget(fake_github_api: FakeGitHubApi) -> FakeRepository:
    """The acme/widget repository: a readme, a manifest, a long source file and a vendored dependency."""
    return fake_github_api.add_repository(
        FakeRepository(
            owner="acme",
            repo="widget",
            description="Widgets for everyone",
            language="TypeScript",
            license_name="MIT License",
            directories=["node_modules", "node_modules/x", "src"],
            files={
                "node_modules/x/y.js": "module.exports = {};",
                "src/index.ts": "export const widget = 1;\n" * 120,
                "package.json": '{"name": "widget"}',
                "README.md": "# Widget\n\nA widget library.",
            },
            sizes={"README.md": 500, "package.json": 200, "src/index.ts": 3000, "node_modules/x/y.js": 10_240},
        )
    )


@pytest.fixture
def acme_empty(fake_github_api: FakeGitHubApi) -> FakeRepository:
    return fake_github_api.add_repository(FakeRepository(owner="acme", repo="empty", size=0))


# Snapshot helpers


def handle_exclude_keys(dictionary: dict[str, Any], exclude_keys: list[str] | None = None) -> dict[str, Any]:
    if exclude_keys is None:
        return dictionary
    return {key: value for key, value in dictionary.items() if key not in exclude_keys}


@overload
def dump_for_snapshot(
    basemodel: None,
    /,
    exclude_keys: list[str] | None = None,
    exclude_none: bool = True,
    **dump_kwargs: Any,
) -> None: ...


@overload
def dump_for_snapshot(
    basemodel: BaseModel,
    /,
    exclude_keys: list[str] | None = None,
    exclude_none: bool = True,
    **dump_kwargs: Any,
) -> dict[str, Any]: ...


def dump_for_snapshot(
    basemodel: None | BaseModel,
    /,
    exclude_keys: list[str] | None = None,
    exclude_none: bool = True,
    **dump_kwargs: Any,
) -> dict[str, Any] | None:
    if basemodel is None:
        return None

    return handle_exclude_keys(basemodel.model_dump(exclude_none=exclude_none, **dump_kwargs), exclude_keys)


def dump_list_for_snapshot(
    basemodel: None | Sequence[BaseModel],
    /,
    exclude_keys: list[str] | None = None,
    exclude_none: bool = True,
    **dump_kwargs: Any,
) -> list[dict[str, Any]]:
    if basemodel is None:
        return []

    return [dump_for_snapshot(item, exclude_keys, exclude_none, **dump_kwargs) for item in basemodel]
