import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from logging import Logger
from pathlib import Path
from typing import Literal

import click
import yaml
from fastmcp import FastMCP
from fastmcp.server.middleware.logging import LoggingMiddleware
from fastmcp.utilities.logging import configure_logging, get_logger
from pydantic import BaseModel

from github_digest_mcp.cache.store import DEFAULT_CLEANUP_DELAY, DiskCacheStore
from github_digest_mcp.clients.errors.github import ClientError
from github_digest_mcp.gateway import DigestGateway
from github_digest_mcp.models.repository.identity import RepositoryIdentity
from github_digest_mcp.servers.digest import DigestServer
from github_digest_mcp.servers.shared.errors import ServerError

logger: Logger = get_logger(name=__name__)


def dump_model_as_yaml(model: BaseModel, /) -> str:
    return yaml.safe_dump(model.model_dump(mode="json"), sort_keys=False, indent=1, width=400)


def new_mcp_server(gateway: DigestGateway, cleanup_delay: float = DEFAULT_CLEANUP_DELAY) -> FastMCP[None]:
    """Create the MCP server. Expired digests are swept from the cache `cleanup_delay` seconds after it starts."""

    @asynccontextmanager
    async def lifespan(_: FastMCP[None]) -> AsyncIterator[None]:
        _ = gateway.cache_store.schedule_cleanup(delay=cleanup_delay)
        yield

    mcp: FastMCP[None] = FastMCP[None](name="GitHub Digest MCP", lifespan=lifespan)

    mcp.add_middleware(middleware=LoggingMiddleware(include_payloads=True, logger=logger))

    digest_server: DigestServer = DigestServer(gateway=gateway, logger=logger)
    _ = digest_server.register_tools(fastmcp=mcp)

    return mcp


@click.group()
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="The directory to store digests in. Defaults to $DIGEST_CACHE_DIR or ./cache/digests",
)
@click.pass_context
def cli(ctx: click.Context, cache_dir: Path | None):
    configure_logging()

    _ = ctx.ensure_object(dict)
    ctx.obj["cache_store"] = DiskCacheStore(cache_dir=cache_dir)


def _cache_store(ctx: click.Context) -> DiskCacheStore:
    cache_store: DiskCacheStore = ctx.obj["cache_store"]
    return cache_store


@cli.command(name="run-mcp")
@click.option(
    "--mcp-transport",
    type=click.Choice(["stdio", "streamable-http"]),
    default="stdio",
    help="The transport to run the MCP server on",
)
@click.pass_context
def run_mcp(ctx: click.Context, mcp_transport: Literal["stdio", "streamable-http"]):
    mcp: FastMCP[None] = new_mcp_server(gateway=DigestGateway(cache_store=_cache_store(ctx)))
    mcp.run(transport=mcp_transport)


@cli.command()
@click.argument("owner")
@click.argument("repo")
@click.option("--deadline", type=click.FloatRange(min=0, min_open=True), default=None, help="Seconds to spend on synthesis")
@click.pass_context
def digest(ctx: click.Context, owner: str, repo: str, deadline: float | None):
    """Print the digest of OWNER/REPO, synthesizing it if it is not cached."""

    gateway = DigestGateway(cache_store=_cache_store(ctx))

    try:
        digest_text: str = asyncio.run(gateway.get_digest(identity=RepositoryIdentity(owner=owner, repo=repo), deadline=deadline))
    except (ClientError, ServerError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(digest_text)


@cli.command()
@click.pass_context
def stats(ctx: click.Context):
    """Print statistics about the cached digests."""

    click.echo(dump_model_as_yaml(_cache_store(ctx).stats()))


@cli.command()
@click.pass_context
def cleanup(ctx: click.Context):
    """Delete expired and unreadable digests."""

    click.echo(dump_model_as_yaml(_cache_store(ctx).cleanup()))


@cli.command()
@click.argument("owner")
@click.argument("repo")
@click.pass_context
def clear(ctx: click.Context, owner: str, repo: str):
    """Delete the cached digest of OWNER/REPO."""

    if _cache_store(ctx).clear(RepositoryIdentity(owner=owner, repo=repo)):
        click.echo(f"Cleared the cached digest of {owner}/{repo}")
    else:
        click.echo(f"No cached digest for {owner}/{repo}")


if __name__ == "__main__":
    cli()
