from datetime import datetime, timedelta
from typing import Self

from pydantic import BaseModel, Field

from github_digest_mcp.models.repository.identity import RepositoryIdentity

CACHE_TTL = timedelta(days=7)
CACHE_RECORD_VERSION = "1.0"


class CacheRecord(BaseModel):
    """The on-disk representation of a cached digest. One record per repository, replaced wholesale on refresh."""

    owner: str
    repo: str
    digest_text: str
    created_at: datetime
    expires_at: datetime
    content_size_bytes: int
    version: str = Field(default=CACHE_RECORD_VERSION, description="The schema version of the record.")

    @classmethod
    def new(cls, identity: RepositoryIdentity, digest_text: str, created_at: datetime) -> Self:
        return cls(
            owner=identity.owner,
            repo=identity.repo,
            digest_text=digest_text,
            created_at=created_at,
            expires_at=created_at + CACHE_TTL,
            content_size_bytes=len(digest_text.encode("utf-8")),
        )

    @property
    def identity(self) -> RepositoryIdentity:
        return RepositoryIdentity(owner=self.owner, repo=self.repo)

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at

    def is_expired(self, now: datetime) -> bool:
        return self.age(now) > CACHE_TTL


class CacheCleanupResult(BaseModel):
    deleted_count: int = Field(default=0, description="The number of expired records that were deleted.")
    error_count: int = Field(default=0, description="The number of unreadable records. They are deleted when possible.")
    freed_bytes: int = Field(default=0, description="The disk space released by the deletions.")


class CacheStats(BaseModel):
    file_count: int = Field(default=0, description="The number of records in the cache directory.")
    total_size_bytes: int = Field(default=0, description="The total size of the records on disk.")
    oldest_record: str | None = Field(default=None, description="The key of the least recently written record.")
    oldest_record_age_seconds: float | None = Field(default=None, description="How long ago the oldest record was written.")
    newest_record: str | None = Field(default=None, description="The key of the most recently written record.")
    newest_record_age_seconds: float | None = Field(default=None, description="How long ago the newest record was written.")
