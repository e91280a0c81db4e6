import asyncio
from collections.abc import Callable
from logging import Logger
from types import TracebackType
from typing import Protocol, Self

from fastmcp.utilities.logging import get_logger

from github_digest_mcp.cache.store import DEFAULT_CLEANUP_DELAY, DiskCacheStore
from github_digest_mcp.clients.github import GitHubRepositoryClient, get_github_token
from github_digest_mcp.digest.models import Digest
from github_digest_mcp.digest.synthesizer import DigestBuilder, DigestSynthesizer, RepositoryFetcher
from github_digest_mcp.models.repository.identity import RepositoryIdentity
from github_digest_mcp.servers.shared.errors import DigestDeadlineExceededError, MissingTokenError


class ClosableRepositoryFetcher(RepositoryFetcher, Protocol):
    async def __aenter__(self) -> Self: ...

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc_value: BaseException | None, traceback: TracebackType | None
    ) -> None: ...


FetcherFactory = Callable[[str], ClosableRepositoryFetcher]
TokenProvider = Callable[[], str]


def new_github_fetcher(auth_token: str) -> GitHubRepositoryClient:
    return GitHubRepositoryClient(token=auth_token)


class DigestGateway:
    """Returns the digest of a repository from the disk cache, synthesizing and caching it on a miss.

    Each call is independent: CacheLookup -> Hit -> Done, or CacheLookup -> Miss -> Fetching -> Synthesizing ->
    Persisting -> Done. A failed cache write does not fail the call. A GitHub token is only needed on a miss.
    """

    def __init__(
        self,
        cache_store: DiskCacheStore,
        fetcher_factory: FetcherFactory = new_github_fetcher,
        token_provider: TokenProvider = get_github_token,
        logger: Logger | None = None,
    ):
        self.cache_store: DiskCacheStore = cache_store
        self.fetcher_factory: FetcherFactory = fetcher_factory
        self.token_provider: TokenProvider = token_provider
        self.logger: Logger = logger or get_logger(name=__name__)

    def _new_fetcher(self, auth_token: str | None) -> ClosableRepositoryFetcher:
        if auth_token is None:
            try:
                auth_token = self.token_provider()
            except ValueError as e:
                raise MissingTokenError from e

        return self.fetcher_factory(auth_token)

    async def get_digest(self, identity: RepositoryIdentity, auth_token: str | None = None, deadline: float | None = None) -> str:
        """Get the digest of a repository.

        Args:
            identity: The repository to digest.
            auth_token: The GitHub token used if the digest has to be synthesized. Defaults to the token of the
                `token_provider`, which is only consulted on a cache miss.
            deadline: The maximum number of seconds to spend synthesizing. When it passes, outstanding fetches are
                cancelled and the partial digest is returned without being cached.

        Raises:
            ResourceNotFoundError: If the repository does not exist or the token cannot access it.
            RequestError: If the repository metadata cannot be retrieved.
            DigestDeadlineExceededError: If the deadline passes before the repository metadata is retrieved.
            MissingTokenError: If the digest is not cached and no GitHub token is available.
        """

        if cached_digest := await asyncio.to_thread(self.cache_store.get, identity):
            return cached_digest

        builder = DigestBuilder(identity=identity)

        async with self._new_fetcher(auth_token) as fetcher:
            synthesizer = DigestSynthesizer(fetcher=fetcher, logger=self.logger)

            try:
                async with asyncio.timeout(deadline):
                    digest: Digest = await synthesizer.synthesize(identity, builder=builder)
            except TimeoutError as e:
                if not builder.has_metadata:
                    raise DigestDeadlineExceededError(identity=identity, deadline=deadline) from e

                partial_digest: Digest = builder.build(complete=False)
                self.logger.warning(
                    f"Deadline of {deadline}s passed while synthesizing {identity}, "
                    f"returning a partial digest with {len(partial_digest.sections)} files"
                )
                return partial_digest.render()

        digest_text: str = digest.render()

        if not await asyncio.to_thread(self.cache_store.set, identity, digest_text):
            self.logger.warning(f"Returning the digest of {identity} without caching it")

        return digest_text


_default_gateway: DigestGateway | None = None


def get_default_gateway() -> DigestGateway:
    """The gateway used by `synthesize_or_fetch_digest`, created on first use."""

    global _default_gateway  # noqa: PLW0603

    if _default_gateway is None:
        _default_gateway = DigestGateway(cache_store=DiskCacheStore())

    return _default_gateway


async def startup(cleanup_delay: float = DEFAULT_CLEANUP_DELAY) -> DigestGateway:
    """Create the process-wide gateway and schedule the sweep of expired digests `cleanup_delay` seconds later.

    Call once when the process starts. `synthesize_or_fetch_digest` also works without it, but then expired digests
    are only removed when they are read.
    """

    gateway: DigestGateway = get_default_gateway()
    _ = gateway.cache_store.schedule_cleanup(delay=cleanup_delay)

    return gateway


async def synthesize_or_fetch_digest(owner: str, repo: str, auth_token: str | None = None) -> str:
    """Return the digest of `owner/repo`, from the cache when possible."""

    return await get_default_gateway().get_digest(RepositoryIdentity(owner=owner, repo=repo), auth_token=auth_token)
