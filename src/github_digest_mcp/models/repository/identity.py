from pydantic import BaseModel, ConfigDict, Field


class RepositoryIdentity(BaseModel):
    """The owner and name of a GitHub repository. Case-sensitive."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    owner: str = Field(min_length=1, description="The owner of the repository.")
    repo: str = Field(min_length=1, description="The name of the repository.")

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def __str__(self) -> str:
        return self.full_name
