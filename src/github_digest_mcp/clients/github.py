import os
from collections.abc import Awaitable, Callable, Collection
from contextlib import AsyncExitStack
from logging import Logger
from types import TracebackType
from typing import TYPE_CHECKING, Any, Self, TypeVar

import httpx
from fastmcp.utilities.logging import get_logger
from githubkit import GitHub as GitHubKit
from githubkit.auth.token import TokenAuthStrategy
from githubkit.exception import GitHubException as GitHubKitGitHubException
from githubkit.exception import RequestFailed as GitHubKitRequestFailed
from githubkit.response import Response as GitHubKitResponse

from github_digest_mcp.clients.errors.github import (
    BlobUnavailableError,
    ExtraInfoType,
    RequestError,
    ResourceNotFoundError,
    TreeUnavailableError,
    describe_failure,
)
from github_digest_mcp.clients.models.github import RepositoryMetadata, decode_blob
from github_digest_mcp.clients.retry import (
    BLOB_RETRY_POLICY,
    METADATA_RETRY_POLICY,
    TREE_RETRY_POLICY,
    RetryPolicy,
    is_rate_limited,
)
from github_digest_mcp.models.repository.identity import RepositoryIdentity
from github_digest_mcp.models.repository.tree import RepositoryTree

if TYPE_CHECKING:
    from githubkit.versions.v2022_11_28.models import Blob as GitHubKitBlob
    from githubkit.versions.v2022_11_28.models import FullRepository as GitHubKitFullRepository
    from githubkit.versions.v2022_11_28.models import GitTree as GitHubKitGitTree

DEFAULT_HTTP_TIMEOUT = 30.0

NOT_FOUND_ERROR = 404
UNAUTHORIZED_ERROR = 401
FORBIDDEN_ERROR = 403

T = TypeVar("T")


def extract_response(response: GitHubKitResponse[T], /) -> T:
    """Extract the response from a response."""

    return response.parsed_data


def get_github_token() -> str:
    env_vars: tuple[str, ...] = ("GITHUB_TOKEN", "GITHUB_PERSONAL_ACCESS_TOKEN")
    for env_var in env_vars:
        if env_var in os.environ:
            return os.environ[env_var]
    msg = "GITHUB_TOKEN or GITHUB_PERSONAL_ACCESS_TOKEN must be set"
    raise ValueError(msg)


def new_githubkit_client(
    token: str,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
    async_transport: httpx.AsyncBaseTransport | None = None,
) -> GitHubKit[TokenAuthStrategy]:
    """Create a githubkit client that follows redirects for renamed and transferred repositories.

    githubkit neither retries nor caches: requests are retried by a `RetryPolicy` and digests are cached on disk.
    """

    return GitHubKit[TokenAuthStrategy](
        auth=TokenAuthStrategy(token=token),
        follow_redirects=True,
        timeout=timeout,
        http_cache=False,
        auto_retry=False,
        async_transport=async_transport,
    )


class GitHubRepositoryClient:
    """Fetches repository metadata, trees and blobs from the GitHub REST API.

    Every request goes through a `RetryPolicy`. A client that creates its own githubkit client shares one connection
    pool between requests while it is entered with `async with`.
    """

    githubkit_client: GitHubKit[Any]
    logger: Logger

    metadata_retry_policy: RetryPolicy
    tree_retry_policy: RetryPolicy
    blob_retry_policy: RetryPolicy

    def __init__(
        self,
        token: str | None = None,
        githubkit_client: GitHubKit[Any] | None = None,
        logger: Logger | None = None,
        metadata_retry_policy: RetryPolicy | None = None,
        tree_retry_policy: RetryPolicy | None = None,
        blob_retry_policy: RetryPolicy | None = None,
    ):
        self._owns_githubkit_client: bool = githubkit_client is None
        self.githubkit_client = githubkit_client or new_githubkit_client(token=token or get_github_token())
        self.logger = logger or get_logger(name=__name__)
        self.metadata_retry_policy = metadata_retry_policy or METADATA_RETRY_POLICY
        self.tree_retry_policy = tree_retry_policy or TREE_RETRY_POLICY
        self.blob_retry_policy = blob_retry_policy or BLOB_RETRY_POLICY
        self._exit_stack: AsyncExitStack | None = None

    async def __aenter__(self) -> Self:
        if self._owns_githubkit_client:
            self._exit_stack = AsyncExitStack()
            _ = await self._exit_stack.enter_async_context(self.githubkit_client)

        return self

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc_value: BaseException | None, traceback: TracebackType | None
    ) -> None:
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
            self._exit_stack = None

    async def _perform_rest_request(
        self,
        action: str,
        retry_policy: RetryPolicy,
        not_found_status_codes: Collection[int] = (NOT_FOUND_ERROR,),
        extra_info: ExtraInfoType | None = None,
        *,
        method: Callable[..., Awaitable[GitHubKitResponse[T]]],
        **request_args: Any,  # pyright: ignore[reportAny]
    ) -> T:
        """Perform a request with retries and extract the response.

        Raises:
            ResourceNotFoundError: If the response status is one of `not_found_status_codes`.
            RequestError: If the request fails after the retries are exhausted or the response is malformed.
        """

        self.logger.info(f"Performing {action} using {method.__name__} with kwargs {request_args}")

        try:
            response: GitHubKitResponse[T] = await retry_policy.run(
                lambda: method(**request_args), description=f"{action} with kwargs {request_args}"
            )
        except GitHubKitRequestFailed as e:
            status_code: int = e.response.status_code
            status_extra_info: ExtraInfoType = {"status_code": str(status_code), **(extra_info or {})}

            if status_code in not_found_status_codes and not is_rate_limited(e.response):
                raise ResourceNotFoundError(action=action, resource=e.request.url.path, extra_info=status_extra_info) from e

            self.logger.warning(f"RequestFailed error performing {action} using {method.__name__} with kwargs {request_args}: {e}")

            raise RequestError(action=action, message=str(e), extra_info=status_extra_info) from e
        except (GitHubKitGitHubException, httpx.TransportError, TimeoutError) as e:
            self.logger.warning(f"Error performing {action} using {method.__name__} with kwargs {request_args}: {e!r}")

            raise RequestError(action=action, message=repr(e), extra_info=extra_info) from e

        try:
            extracted_response: T = extract_response(response)
        except ValueError as e:
            raise RequestError(action=action, message=f"Unexpected response: {e}", extra_info=extra_info) from e

        self.logger.debug(f"Completed {action} using {method.__name__} with kwargs {request_args}")

        return extracted_response

    async def get_metadata(self, identity: RepositoryIdentity) -> RepositoryMetadata:
        """Get the metadata of a repository.

        Raises:
            ResourceNotFoundError: If the repository does not exist or the token cannot access it.
            RequestError: If the request still fails after all retries.
        """

        full_repository: GitHubKitFullRepository = await self._perform_rest_request(
            action="Get repository",
            retry_policy=self.metadata_retry_policy,
            not_found_status_codes=(NOT_FOUND_ERROR, UNAUTHORIZED_ERROR, FORBIDDEN_ERROR),
            extra_info={"identity": identity.full_name, "stage": "metadata"},
            method=self.githubkit_client.rest.repos.async_get,
            owner=identity.owner,
            repo=identity.repo,
        )

        return RepositoryMetadata.from_full_repository(full_repository=full_repository)

    async def get_tree(self, identity: RepositoryIdentity, branch: str) -> RepositoryTree:
        """Get the full recursive tree of a branch.

        Raises:
            TreeUnavailableError: If the tree cannot be retrieved.
        """

        try:
            git_tree: GitHubKitGitTree = await self._perform_rest_request(
                action="Get tree",
                retry_policy=self.tree_retry_policy,
                method=self.githubkit_client.rest.git.async_get_tree,
                owner=identity.owner,
                repo=identity.repo,
                tree_sha=branch,
                recursive="1",
            )
        except RequestError as e:
            raise TreeUnavailableError(resource=identity.full_name, branch=branch, message=str(e)) from e

        repository_tree: RepositoryTree = RepositoryTree.from_git_tree(git_tree=git_tree)

        if repository_tree.truncated:
            self.logger.warning(f"The tree of {identity} on {branch} was truncated by GitHub, only {len(repository_tree.entries)} entries")

        return repository_tree

    async def get_blob(self, identity: RepositoryIdentity, sha: str) -> bytes:
        """Get the raw content of a blob.

        Raises:
            BlobUnavailableError: If the blob cannot be retrieved or decoded.
        """

        try:
            blob: GitHubKitBlob = await self._perform_rest_request(
                action="Get blob",
                retry_policy=self.blob_retry_policy,
                method=self.githubkit_client.rest.git.async_get_blob,
                owner=identity.owner,
                repo=identity.repo,
                file_sha=sha,
            )
        except RequestError as e:
            raise BlobUnavailableError(resource=identity.full_name, sha=sha, message=str(e), reason=describe_failure(e)) from e

        try:
            return decode_blob(blob)
        except ValueError as e:
            raise BlobUnavailableError(
                resource=identity.full_name, sha=sha, message=f"Could not decode blob: {e}", reason="undecodable content"
            ) from e

    async def get_blob_text(self, identity: RepositoryIdentity, sha: str) -> str:
        return (await self.get_blob(identity, sha)).decode("utf-8", errors="replace")
