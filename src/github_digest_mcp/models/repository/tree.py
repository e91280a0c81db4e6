from typing import Literal, Self

from githubkit.versions.v2022_11_28.models import GitTree
from pydantic import BaseModel, ConfigDict, Field


def get_file_extension(file_path: str) -> str | None:
    file_name = get_dir_and_file_from_path(file_path)[1]
    if "." not in file_name:
        return None
    return "." + file_name.split(".")[-1]


def get_dir_and_file_from_path(path: str) -> tuple[str, str]:
    path_parts = path.split("/")
    directory_path = "/".join(path_parts[:-1])
    file_path = path_parts[-1]
    return directory_path, file_path


class RemoteFileEntry(BaseModel):
    """A file or directory listed in a repository tree."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(description="The path of the entry, relative to the repository root.")
    size_bytes: int | None = Field(default=None, description="The size of the blob in bytes. Not reported for trees.")
    content_hash: str = Field(description="The git object SHA of the entry.")
    kind: Literal["blob", "tree"] = Field(description="Whether the entry is a file (blob) or a directory (tree).")

    @property
    def is_blob(self) -> bool:
        return self.kind == "blob"


class RepositoryTree(BaseModel):
    """The entries of a repository tree, in the order the API returned them."""

    entries: list[RemoteFileEntry]
    truncated: bool = Field(
        default=False,
        description="Whether the tree was too large to list completely. If true, the entries do not contain all files.",
    )

    @classmethod
    def from_git_tree(cls, git_tree: GitTree) -> Self:
        entries: list[RemoteFileEntry] = [
            RemoteFileEntry(
                path=tree_item.path,
                size_bytes=tree_item.size if isinstance(tree_item.size, int) else None,
                content_hash=tree_item.sha,
                kind="blob" if tree_item.type == "blob" else "tree",
            )
            for tree_item in git_tree.tree
            # Submodules are listed as commits and have no content in this repository
            if tree_item.type in ("blob", "tree")
        ]

        return cls(entries=entries, truncated=git_tree.truncated)
