import asyncio
import os
import re
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from logging import Logger
from pathlib import Path

from fastmcp.utilities.logging import get_logger

from github_digest_mcp.cache.models import CACHE_TTL, CacheCleanupResult, CacheRecord, CacheStats
from github_digest_mcp.models.repository.identity import RepositoryIdentity

DEFAULT_CACHE_DIR = Path("cache") / "digests"
CACHE_FILE_EXTENSION = ".json"
TEMP_FILE_SUFFIX = ".tmp"
DEFAULT_CLEANUP_DELAY = 5.0

ONE_HOUR_IN_SECONDS = 60 * 60
ONE_DAY_IN_SECONDS = ONE_HOUR_IN_SECONDS * 24

UNSAFE_KEY_CHARACTERS = re.compile(r"[^A-Za-z0-9._-]")


def get_cache_dir() -> Path:
    if cache_dir := os.getenv("DIGEST_CACHE_DIR"):
        return Path(cache_dir)
    return DEFAULT_CACHE_DIR


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def cache_key(identity: RepositoryIdentity) -> str:
    """The storage key of a repository, e.g. `facebook/react` becomes `facebook--react`.

    GitHub owners never contain `--` or end with `-`, so the first `--` always separates owner from repository.
    """

    owner = UNSAFE_KEY_CHARACTERS.sub("-", identity.owner)
    repo = UNSAFE_KEY_CHARACTERS.sub("-", identity.repo)
    return f"{owner}--{repo}"


class DiskCacheStore:
    """Stores one digest per repository as a JSON file, expiring records after `CACHE_TTL`.

    Writes go to a temporary file in the cache directory that is renamed over the record, so readers never see a
    partial record. Concurrent writers for the same repository each use their own temporary file and the last rename
    wins. Read and write failures never raise: they are logged and treated as a miss or a skipped write.

    All methods block on file I/O. Async callers should run them in a worker thread.
    """

    cache_dir: Path
    logger: Logger

    def __init__(self, cache_dir: Path | None = None, logger: Logger | None = None, clock: Callable[[], datetime] = utc_now):
        self.cache_dir = cache_dir or get_cache_dir()
        self.logger = logger or get_logger(name=__name__)
        self.clock: Callable[[], datetime] = clock
        self._cleanup_task: asyncio.Task[CacheCleanupResult] | None = None

        self._ensure_cache_dir()

    def _ensure_cache_dir(self) -> None:
        if not self.cache_dir.exists():
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self.logger.info(f"Created cache directory: {self.cache_dir}")

    def path_for(self, identity: RepositoryIdentity) -> Path:
        return self.cache_dir / f"{cache_key(identity)}{CACHE_FILE_EXTENSION}"

    def _record_files(self) -> list[Path]:
        if not self.cache_dir.exists():
            return []

        return sorted(self.cache_dir.glob(f"*{CACHE_FILE_EXTENSION}"))

    def _read_record(self, path: Path) -> CacheRecord:
        return CacheRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def _delete(self, path: Path) -> bool:
        """Delete a file, returning whether it was removed. Failures are logged, not raised."""

        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            self.logger.warning(f"Could not delete cache file {path.name}: {e}")
            return False

        return True

    def get(self, identity: RepositoryIdentity) -> str | None:
        """Return the cached digest of a repository, or None if there is no valid record."""

        path: Path = self.path_for(identity)

        if not path.exists():
            self.logger.info(f"MISS - No cache file for {identity}")
            return None

        try:
            record: CacheRecord = self._read_record(path)
        except (OSError, ValueError) as e:
            self.logger.warning(f"Error reading cache for {identity}, deleting corrupted cache file: {e}")
            _ = self._delete(path)
            return None

        if record.identity != identity:
            self.logger.warning(f"MISS - Cache file {path.name} belongs to {record.identity}, not {identity}")
            return None

        now: datetime = self.clock()

        if record.is_expired(now):
            days_old = int(record.age(now).total_seconds() // ONE_DAY_IN_SECONDS)
            self.logger.info(f"EXPIRED - Cache for {identity} is {days_old} days old, deleting...")
            _ = self._delete(path)
            return None

        hours_old = int(record.age(now).total_seconds() // ONE_HOUR_IN_SECONDS)
        self.logger.info(f"HIT - Using cached {identity} ({hours_old}h old, {record.content_size_bytes // 1024}KB)")

        return record.digest_text

    def set(self, identity: RepositoryIdentity, digest_text: str) -> bool:
        """Save the digest of a repository, replacing any previous record. Returns False if the write failed."""

        path: Path = self.path_for(identity)
        record: CacheRecord = CacheRecord.new(identity=identity, digest_text=digest_text, created_at=self.clock())

        try:
            self._ensure_cache_dir()

            file_descriptor, temp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{path.stem}.", suffix=TEMP_FILE_SUFFIX)
            temp_path = Path(temp_name)

            try:
                with os.fdopen(file_descriptor, "w", encoding="utf-8") as temp_file:
                    _ = temp_file.write(record.model_dump_json(indent=2))
                _ = temp_path.replace(path)
            finally:
                # A no-op once the rename succeeded
                temp_path.unlink(missing_ok=True)
        except OSError:
            self.logger.exception(f"Error saving cache for {identity}")
            return False

        self.logger.info(f"CACHED - Saved {identity} ({record.content_size_bytes // 1024}KB) to disk")

        return True

    def is_cached(self, identity: RepositoryIdentity) -> bool:
        """Whether a record exists for the repository. Does not check expiry."""
        return self.path_for(identity).exists()

    def clear(self, identity: RepositoryIdentity) -> bool:
        """Delete the record of a repository. Returns whether a record was deleted."""

        if deleted := self._delete(self.path_for(identity)):
            self.logger.info(f"Cleared cache for {identity}")

        return deleted

    def cleanup(self) -> CacheCleanupResult:
        """Delete every expired or unreadable record, and temporary files left behind by interrupted writes."""

        result = CacheCleanupResult()
        now: datetime = self.clock()

        for path in self._record_files():
            try:
                size: int = path.stat().st_size
                record: CacheRecord = self._read_record(path)
            except FileNotFoundError:
                continue
            except (OSError, ValueError) as e:
                result.error_count += 1
                self.logger.warning(f"CLEANUP ERROR - {path.name}: {e}")
                if self._delete(path):
                    self.logger.info(f"Deleted corrupted file: {path.name}")
                continue

            if not record.is_expired(now):
                continue

            if self._delete(path):
                result.deleted_count += 1
                result.freed_bytes += size
                days_old = int(record.age(now).total_seconds() // ONE_DAY_IN_SECONDS)
                self.logger.info(f"CLEANUP - Deleted expired {path.name} ({days_old} days old)")

        for temp_path in self.cache_dir.glob(f".*{TEMP_FILE_SUFFIX}") if self.cache_dir.exists() else []:
            try:
                age_seconds: float = now.timestamp() - temp_path.stat().st_mtime
            except OSError:
                continue

            if age_seconds > CACHE_TTL.total_seconds():
                _ = self._delete(temp_path)

        return result

    def stats(self) -> CacheStats:
        """Summarize the records on disk without modifying them."""

        stats = CacheStats()
        now_timestamp: float = self.clock().timestamp()
        oldest_mtime: float | None = None
        newest_mtime: float | None = None

        for path in self._record_files():
            try:
                file_stat = path.stat()
            except OSError:
                continue

            stats.file_count += 1
            stats.total_size_bytes += file_stat.st_size

            if oldest_mtime is None or file_stat.st_mtime < oldest_mtime:
                oldest_mtime = file_stat.st_mtime
                stats.oldest_record = path.stem

            if newest_mtime is None or file_stat.st_mtime > newest_mtime:
                newest_mtime = file_stat.st_mtime
                stats.newest_record = path.stem

        if oldest_mtime is not None:
            stats.oldest_record_age_seconds = max(now_timestamp - oldest_mtime, 0.0)

        if newest_mtime is not None:
            stats.newest_record_age_seconds = max(now_timestamp - newest_mtime, 0.0)

        return stats

    async def _deferred_cleanup(self, delay: float) -> CacheCleanupResult:
        await asyncio.sleep(delay)

        result: CacheCleanupResult = await asyncio.to_thread(self.cleanup)

        if result.deleted_count > 0:
            self.logger.info(f"Startup cleanup: Deleted {result.deleted_count} expired files, freed {result.freed_bytes} bytes")

        return result

    def schedule_cleanup(self, delay: float = DEFAULT_CLEANUP_DELAY) -> asyncio.Task[CacheCleanupResult]:
        """Run `cleanup` in the background after `delay` seconds. Must be called from a running event loop."""

        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._deferred_cleanup(delay))

        return self._cleanup_task
