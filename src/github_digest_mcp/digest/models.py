from datetime import UTC, datetime
from typing import Self

from pydantic import BaseModel, ConfigDict, Field

from github_digest_mcp.clients.models.github import RepositoryMetadata
from github_digest_mcp.models.repository.identity import RepositoryIdentity

DEFAULT_TRUNCATE_CHARACTERS = 2000
TRUNCATION_MARKER = "\n... (content truncated)"

EMPTY_REPOSITORY_NOTICE = "This repository is empty and contains no files."
TREE_UNAVAILABLE_NOTICE = "Could not fetch repository file structure."
FILE_ERROR_PLACEHOLDER = "Error reading file content."
INCOMPLETE_DIGEST_NOTICE = "The digest was cut short before all files could be read. Some files are missing."

NOT_SPECIFIED = "Not specified"


def truncate_content(content: str, max_characters: int = DEFAULT_TRUNCATE_CHARACTERS) -> tuple[str, bool]:
    """Cut the content to `max_characters` and append the truncation marker. Returns the content and whether it was cut."""

    if len(content) > max_characters:
        return content[:max_characters] + TRUNCATION_MARKER, True

    return content, False


def render_overview(metadata: RepositoryMetadata) -> str:
    return (
        f"# Repository Analysis: {metadata.name}\n\n"
        "## Overview\n\n"
        f"- Repository: {metadata.full_name}\n"
        f"- Description: {metadata.description or 'No description provided'}\n"
        f"- Default Branch: {metadata.default_branch}\n"
        f"- License: {metadata.license.name if metadata.license else NOT_SPECIFIED}\n"
        f"- Language: {metadata.language or NOT_SPECIFIED}\n\n"
    )


class DigestSection(BaseModel):
    """The content of one file in a digest, or a placeholder if it could not be read."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(description="The path of the file.")
    content: str | None = Field(default=None, description="The possibly truncated content of the file. None if it could not be read.")
    error: str | None = Field(default=None, description="The kind of error that prevented reading the content, e.g. `HTTP 502`.")
    truncated: bool = Field(default=False, description="Whether the content has been truncated.")

    @classmethod
    def placeholder(cls, path: str, error: str) -> Self:
        return cls(path=path, error=error)

    def render(self) -> str:
        if self.content is None:
            reason: str = f" ({self.error})" if self.error else ""
            return f"### File: {self.path}\n\n{FILE_ERROR_PLACEHOLDER}{reason}\n\n"

        return f"### File: {self.path}\n\n```\n{self.content}\n```\n\n"


class Digest(BaseModel):
    """A bounded, ranked textual summary of a repository."""

    model_config = ConfigDict(frozen=True)

    identity: RepositoryIdentity
    overview_header: str = Field(description="The rendered repository overview.")
    notice: str | None = Field(default=None, description="Replaces the file listing when no files could be included.")
    sections: tuple[DigestSection, ...] = Field(default=(), description="The included files, most important first.")
    generated_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    complete: bool = Field(default=True, description="False if the digest was cut short by a deadline.")

    def render(self) -> str:
        digest_text: str = self.overview_header

        if self.notice is not None:
            digest_text += f"\n## Files\n\n{self.notice}\n"
        else:
            digest_text += "## File Structure\n\n"
            digest_text += f"Total Files in Analysis: {len(self.sections)}\n\n"
            digest_text += "".join(section.render() for section in self.sections)

        if not self.complete:
            digest_text += f"\n## Note\n\n{INCOMPLETE_DIGEST_NOTICE}\n"

        return digest_text
