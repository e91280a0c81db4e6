import asyncio
from logging import Logger
from typing import Any

from fastmcp.exceptions import ToolError
from fastmcp.server.server import FastMCP
from fastmcp.tools import Tool
from fastmcp.utilities.logging import get_logger

from github_digest_mcp.cache.models import CacheCleanupResult, CacheStats
from github_digest_mcp.clients.errors.github import ClientError
from github_digest_mcp.gateway import DigestGateway
from github_digest_mcp.models.repository.identity import RepositoryIdentity
from github_digest_mcp.servers.shared.annotations import OWNER, REPO
from github_digest_mcp.servers.shared.errors import ServerError


class DigestServer:
    """Exposes repository digests and the digest cache as MCP tools."""

    def __init__(
        self,
        gateway: DigestGateway,
        logger: Logger | None = None,
    ):
        self.logger: Logger = logger or get_logger(name=__name__)
        self.gateway: DigestGateway = gateway

    def register_tools(self, fastmcp: FastMCP[Any]) -> FastMCP[Any]:
        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.get_repository_digest))
        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.get_cache_stats))
        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.cleanup_cache))
        _ = fastmcp.add_tool(tool=Tool.from_function(fn=self.clear_repository_cache))

        return fastmcp

    async def get_repository_digest(self, owner: OWNER, repo: REPO) -> str:
        """Get a markdown digest of a repository: an overview of its metadata followed by the content of its most
        important files. Digests are cached on disk for 7 days."""

        identity = RepositoryIdentity(owner=owner, repo=repo)

        try:
            return await self.gateway.get_digest(identity=identity)
        except (ClientError, ServerError) as e:
            self.logger.warning(f"Could not produce a digest for {identity}: {e}")
            raise ToolError(str(e)) from e

    async def get_cache_stats(self) -> CacheStats:
        """Get the number, total size and age range of the cached digests."""

        return await asyncio.to_thread(self.gateway.cache_store.stats)

    async def cleanup_cache(self) -> CacheCleanupResult:
        """Delete expired and unreadable digests from the cache."""

        return await asyncio.to_thread(self.gateway.cache_store.cleanup)

    async def clear_repository_cache(self, owner: OWNER, repo: REPO) -> bool:
        """Delete the cached digest of a repository. Returns whether a digest was deleted."""

        return await asyncio.to_thread(self.gateway.cache_store.clear, RepositoryIdentity(owner=owner, repo=repo))
