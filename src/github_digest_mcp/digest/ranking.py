"""File filtering and importance ranking for repository digests.

Scoring is a fixed, ordered table of rules. The first rule whose predicate matches a path decides its score, so the
table reads top to bottom in precedence order. Scoring ignores case, the excluded directory prefixes do not.
"""

import re
from collections.abc import Callable, Sequence
from typing import Self

from pydantic import BaseModel, ConfigDict, Field

from github_digest_mcp.models.repository.tree import RemoteFileEntry, get_file_extension

MAX_FILE_SIZE_BYTES = 100_000
DEFAULT_WORKING_SET_SIZE = 20
DEFAULT_SCORE = 100

EXCLUDED_PATH_PREFIXES: tuple[str, ...] = (
    "node_modules/",
    "venv/",
    "dist/",
    "build/",
    ".git/",
    "assets/",
    "public/",
)

EXCLUDED_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".bmp",
        ".ico",
        ".svg",
        ".mp4",
        ".mp3",
        ".wav",
        ".ogg",
        ".pdf",
        ".zip",
        ".tar",
        ".gz",
        ".rar",
        ".exe",
        ".dll",
        ".so",
        ".pyc",
        ".class",
    }
)

PathPredicate = Callable[[str], bool]


def exact_path(pattern: str) -> PathPredicate:
    """Match the whole path against a regular expression. Only root level files can match."""

    compiled = re.compile(pattern, re.IGNORECASE)

    def predicate(path: str) -> bool:
        return compiled.fullmatch(path) is not None

    return predicate


def path_prefix(prefix: str) -> PathPredicate:
    def predicate(path: str) -> bool:
        return path.lower().startswith(prefix)

    return predicate


def file_extension(*extensions: str) -> PathPredicate:
    def predicate(path: str) -> bool:
        extension: str | None = get_file_extension(path)
        return extension is not None and extension.lower() in extensions

    return predicate


class ImportanceRule(BaseModel):
    """Assigns `score` to any path matching `predicate`."""

    model_config = ConfigDict(frozen=True)

    name: str
    predicate: PathPredicate = Field(exclude=True)
    score: int

    def matches(self, path: str) -> bool:
        return self.predicate(path)


IMPORTANCE_RULES: tuple[ImportanceRule, ...] = (
    # Entry points and manifests at the repository root
    ImportanceRule(name="readme", predicate=exact_path(r"readme\.md"), score=1000),
    ImportanceRule(name="package-json", predicate=exact_path(r"package\.json"), score=950),
    ImportanceRule(name="requirements-txt", predicate=exact_path(r"requirements\.txt"), score=950),
    ImportanceRule(name="dockerfile", predicate=exact_path(r"dockerfile"), score=900),
    ImportanceRule(name="docker-compose", predicate=exact_path(r"docker-compose\.ya?ml"), score=900),
    ImportanceRule(name="tsconfig", predicate=exact_path(r"tsconfig\.json"), score=850),
    ImportanceRule(name="env-example", predicate=exact_path(r"\.env\.example"), score=800),
    ImportanceRule(name="main", predicate=exact_path(r"main\.[jt]s"), score=800),
    ImportanceRule(name="index", predicate=exact_path(r"index\.[jt]sx?"), score=800),
    ImportanceRule(name="app", predicate=exact_path(r"app\.[jt]sx?"), score=800),
    ImportanceRule(name="server", predicate=exact_path(r"server\.[jt]s"), score=800),
    # Conventional source directories
    ImportanceRule(name="src-dir", predicate=path_prefix("src/"), score=700),
    ImportanceRule(name="app-dir", predicate=path_prefix("app/"), score=700),
    ImportanceRule(name="api-dir", predicate=path_prefix("api/"), score=650),
    ImportanceRule(name="components-dir", predicate=path_prefix("components/"), score=600),
    ImportanceRule(name="pages-dir", predicate=path_prefix("pages/"), score=600),
    ImportanceRule(name="lib-dir", predicate=path_prefix("lib/"), score=550),
    ImportanceRule(name="utils-dir", predicate=path_prefix("utils/"), score=550),
    ImportanceRule(name="hooks-dir", predicate=path_prefix("hooks/"), score=500),
    ImportanceRule(name="models-dir", predicate=path_prefix("models/"), score=500),
    ImportanceRule(name="controllers-dir", predicate=path_prefix("controllers/"), score=500),
    # Source file types
    ImportanceRule(name="typescript", predicate=file_extension(".ts", ".tsx"), score=400),
    ImportanceRule(name="javascript", predicate=file_extension(".js", ".jsx"), score=390),
    ImportanceRule(name="python", predicate=file_extension(".py"), score=380),
    ImportanceRule(name="java", predicate=file_extension(".java"), score=370),
    ImportanceRule(name="go", predicate=file_extension(".go"), score=360),
    ImportanceRule(name="rust", predicate=file_extension(".rs"), score=350),
    ImportanceRule(name="markdown", predicate=file_extension(".md"), score=300),
    ImportanceRule(name="json", predicate=file_extension(".json"), score=200),
    ImportanceRule(name="yaml", predicate=file_extension(".yml", ".yaml"), score=200),
)


def get_file_importance_score(path: str, rules: Sequence[ImportanceRule] = IMPORTANCE_RULES) -> int:
    """Return the score of the first rule matching the path, or the default score."""

    for rule in rules:
        if rule.matches(path):
            return rule.score

    return DEFAULT_SCORE


def is_excluded_path(path: str) -> bool:
    return path.startswith(EXCLUDED_PATH_PREFIXES)


def has_excluded_extension(path: str) -> bool:
    extension: str | None = get_file_extension(path)
    return extension is not None and extension.lower() in EXCLUDED_EXTENSIONS


def is_candidate_file(entry: RemoteFileEntry, max_file_size: int = MAX_FILE_SIZE_BYTES) -> bool:
    """Whether a tree entry is eligible for the digest: a blob, outside excluded directories, not binary, not too large."""

    if not entry.is_blob or not entry.path:
        return False

    if is_excluded_path(entry.path) or has_excluded_extension(entry.path):
        return False

    return entry.size_bytes is None or entry.size_bytes < max_file_size


class RankedFile(RemoteFileEntry):
    """A candidate file with its importance score and its position in the original tree."""

    importance_score: int = Field(description="The importance of the file. Higher is more important.")
    tree_index: int = Field(description="The position of the file in the tree listing, used to break ties.")
    truncated_content: str | None = Field(default=None, description="The content of the file after truncation, once fetched.")

    @classmethod
    def from_entry(cls, entry: RemoteFileEntry, tree_index: int, rules: Sequence[ImportanceRule] = IMPORTANCE_RULES) -> Self:
        return cls(
            **entry.model_dump(),  # pyright: ignore[reportAny]
            importance_score=get_file_importance_score(entry.path, rules=rules),
            tree_index=tree_index,
        )


def filter_files(entries: Sequence[RemoteFileEntry], max_file_size: int = MAX_FILE_SIZE_BYTES) -> list[tuple[int, RemoteFileEntry]]:
    """Return the candidate entries with their index in the original listing."""

    return [(index, entry) for index, entry in enumerate(entries) if is_candidate_file(entry, max_file_size=max_file_size)]


def rank_files(
    entries: Sequence[RemoteFileEntry],
    rules: Sequence[ImportanceRule] = IMPORTANCE_RULES,
    max_file_size: int = MAX_FILE_SIZE_BYTES,
) -> list[RankedFile]:
    """Filter and rank the entries of a tree, most important first. Ties keep their tree order."""

    ranked_files: list[RankedFile] = [
        RankedFile.from_entry(entry, tree_index=index, rules=rules) for index, entry in filter_files(entries, max_file_size=max_file_size)
    ]

    return sorted(ranked_files, key=lambda ranked_file: (-ranked_file.importance_score, ranked_file.tree_index))


def select_working_set(
    entries: Sequence[RemoteFileEntry],
    limit: int = DEFAULT_WORKING_SET_SIZE,
    rules: Sequence[ImportanceRule] = IMPORTANCE_RULES,
    max_file_size: int = MAX_FILE_SIZE_BYTES,
) -> list[RankedFile]:
    """Return the `limit` most important candidate files."""

    return rank_files(entries, rules=rules, max_file_size=max_file_size)[:limit]
