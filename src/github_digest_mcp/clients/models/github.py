import base64
from typing import Self

from githubkit.versions.v2022_11_28.models import Blob as GitHubKitBlob
from githubkit.versions.v2022_11_28.models import FullRepository as GitHubKitFullRepository
from githubkit.versions.v2022_11_28.models import LicenseSimple as GitHubKitLicenseSimple
from pydantic import BaseModel, ConfigDict, Field


def decode_blob(blob: GitHubKitBlob) -> bytes:
    """Return the raw bytes of a blob. GitHub sends blob content base64 encoded."""

    if blob.encoding == "base64":
        return base64.b64decode(blob.content)

    return blob.content.encode("utf-8")


class RepositoryLicense(BaseModel):
    """A repository license."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="The name of the license.")
    spdx_id: str | None = Field(default=None, description="The SPDX identifier of the license.")

    @classmethod
    def from_license_simple(cls, license_simple: GitHubKitLicenseSimple) -> Self:
        return cls(name=license_simple.name, spdx_id=license_simple.spdx_id)


class RepositoryMetadata(BaseModel):
    """The metadata of a repository that the digest overview is built from."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="The name of the repository.")
    full_name: str = Field(description="The full name of the repository, including the owner.")
    description: str | None = Field(default=None, description="The description of the repository.")
    default_branch: str = Field(description="The default branch of the repository.")
    size_bytes: int | None = Field(default=None, description="The size of the repository as reported by GitHub. None if unknown.")
    license: RepositoryLicense | None = Field(default=None, description="The license of the repository.")
    language: str | None = Field(default=None, description="The primary language of the repository.")
    stars: int | None = Field(default=None, description="The number of stars. None if GitHub did not report it.")

    @property
    def is_empty(self) -> bool:
        """GitHub reports a size of zero for repositories that have never been pushed to."""
        return self.size_bytes == 0

    @classmethod
    def from_full_repository(cls, full_repository: GitHubKitFullRepository) -> Self:
        repository_license = (
            RepositoryLicense.from_license_simple(license_simple=full_repository.license_) if full_repository.license_ else None
        )

        return cls(
            name=full_repository.name,
            full_name=full_repository.full_name,
            description=full_repository.description,
            default_branch=full_repository.default_branch,
            size_bytes=full_repository.size,
            license=repository_license,
            language=full_repository.language,
            stars=full_repository.stargazers_count,
        )
