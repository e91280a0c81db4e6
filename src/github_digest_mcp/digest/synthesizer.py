import asyncio
from collections.abc import Sequence
from logging import Logger
from typing import Protocol

from fastmcp.utilities.logging import get_logger

from github_digest_mcp.clients.errors.github import BlobUnavailableError, TreeUnavailableError
from github_digest_mcp.clients.models.github import RepositoryMetadata
from github_digest_mcp.digest.models import (
    DEFAULT_TRUNCATE_CHARACTERS,
    EMPTY_REPOSITORY_NOTICE,
    TREE_UNAVAILABLE_NOTICE,
    Digest,
    DigestSection,
    render_overview,
    truncate_content,
)
from github_digest_mcp.digest.ranking import (
    DEFAULT_WORKING_SET_SIZE,
    IMPORTANCE_RULES,
    MAX_FILE_SIZE_BYTES,
    ImportanceRule,
    RankedFile,
    select_working_set,
)
from github_digest_mcp.models.repository.identity import RepositoryIdentity
from github_digest_mcp.models.repository.tree import RepositoryTree

DEFAULT_MAX_CONCURRENT_FETCHES = 8


class RepositoryFetcher(Protocol):
    async def get_metadata(self, identity: RepositoryIdentity) -> RepositoryMetadata: ...

    async def get_tree(self, identity: RepositoryIdentity, branch: str) -> RepositoryTree: ...

    async def get_blob_text(self, identity: RepositoryIdentity, sha: str) -> str: ...


class DigestBuilder:
    """Collects the parts of a digest as they are produced.

    Sections are stored in slots by rank, so the digest keeps rank order whatever order the fetches complete in. A
    builder can be rendered at any point, which is how a deadline turns into a partial digest.
    """

    identity: RepositoryIdentity
    metadata: RepositoryMetadata | None
    notice: str | None

    def __init__(self, identity: RepositoryIdentity):
        self.identity = identity
        self.metadata = None
        self.notice = None
        self._slots: list[DigestSection | None] = []

    @property
    def has_metadata(self) -> bool:
        return self.metadata is not None

    def reserve(self, count: int) -> None:
        self._slots = [None] * count

    def add_section(self, rank: int, section: DigestSection) -> None:
        self._slots[rank] = section

    @property
    def sections(self) -> tuple[DigestSection, ...]:
        return tuple(section for section in self._slots if section is not None)

    def build(self, complete: bool = True) -> Digest:
        if self.metadata is None:
            msg = f"Cannot build a digest for {self.identity} before its metadata is known"
            raise ValueError(msg)

        return Digest(
            identity=self.identity,
            overview_header=render_overview(self.metadata),
            notice=self.notice,
            sections=self.sections,
            complete=complete,
        )


class DigestSynthesizer:
    """Turns a repository into a Digest: filter the tree, rank it, fetch the top files and truncate them.

    Only a metadata failure is raised to the caller. A missing tree produces a metadata-only digest and a missing
    blob produces a placeholder section.
    """

    def __init__(
        self,
        fetcher: RepositoryFetcher,
        logger: Logger | None = None,
        max_files: int = DEFAULT_WORKING_SET_SIZE,
        max_file_size: int = MAX_FILE_SIZE_BYTES,
        truncate_characters: int = DEFAULT_TRUNCATE_CHARACTERS,
        max_concurrent_fetches: int = DEFAULT_MAX_CONCURRENT_FETCHES,
        rules: Sequence[ImportanceRule] = IMPORTANCE_RULES,
    ):
        self.fetcher: RepositoryFetcher = fetcher
        self.logger: Logger = logger or get_logger(name=__name__)
        self.max_files: int = max_files
        self.max_file_size: int = max_file_size
        self.truncate_characters: int = truncate_characters
        self.max_concurrent_fetches: int = max_concurrent_fetches
        self.rules: Sequence[ImportanceRule] = rules

    async def synthesize(self, identity: RepositoryIdentity, builder: DigestBuilder | None = None) -> Digest:
        """Build the digest of a repository.

        Args:
            identity: The repository to digest.
            builder: Receives the digest as it is assembled. Pass one in to keep access to partial results.

        Raises:
            ResourceNotFoundError: If the repository does not exist or is not accessible.
            RequestError: If the metadata cannot be retrieved.
        """

        builder = builder or DigestBuilder(identity=identity)

        self.logger.info(f"Starting digest synthesis for {identity}")

        metadata: RepositoryMetadata = await self.fetcher.get_metadata(identity)
        builder.metadata = metadata

        if metadata.is_empty:
            self.logger.info(f"Repository {identity} is empty.")
            builder.notice = EMPTY_REPOSITORY_NOTICE
            return builder.build()

        try:
            repository_tree: RepositoryTree = await self.fetcher.get_tree(identity, metadata.default_branch)
        except TreeUnavailableError as e:
            self.logger.warning(f"Failed to fetch repository tree for {identity}, producing a metadata-only digest: {e}")
            builder.notice = TREE_UNAVAILABLE_NOTICE
            return builder.build()

        working_set: list[RankedFile] = select_working_set(
            repository_tree.entries,
            limit=self.max_files,
            rules=self.rules,
            max_file_size=self.max_file_size,
        )

        builder.reserve(len(working_set))

        semaphore = asyncio.Semaphore(self.max_concurrent_fetches)

        async def fetch_into_slot(rank: int, ranked_file: RankedFile) -> None:
            async with semaphore:
                section: DigestSection = await self._fetch_section(identity, ranked_file)
            builder.add_section(rank, section)

        _ = await asyncio.gather(*(fetch_into_slot(rank, ranked_file) for rank, ranked_file in enumerate(working_set)))

        digest: Digest = builder.build()

        self.logger.info(f"Digest synthesis completed for {identity} with {len(digest.sections)} files")

        return digest

    async def _fetch_section(self, identity: RepositoryIdentity, ranked_file: RankedFile) -> DigestSection:
        try:
            content: str = await self.fetcher.get_blob_text(identity, ranked_file.content_hash)
        except BlobUnavailableError as e:
            self.logger.warning(f"Skipping file {ranked_file.path} of {identity} due to error: {e}")
            return DigestSection.placeholder(path=ranked_file.path, error=e.reason)

        truncated_content, truncated = truncate_content(content, max_characters=self.truncate_characters)
        ranked_file = ranked_file.model_copy(update={"truncated_content": truncated_content})

        return DigestSection(path=ranked_file.path, content=ranked_file.truncated_content, truncated=truncated)
