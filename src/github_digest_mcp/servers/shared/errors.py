from github_digest_mcp.models.repository.identity import RepositoryIdentity

ExtraInfoType = dict[str, str | None]


class ServerError(Exception):
    """A request error from the GitHub Digest server."""

    def __init__(self, message: str, extra_info: ExtraInfoType | None = None):
        self.extra_info: ExtraInfoType = extra_info or {}
        msg = message
        if extra_info:
            msg += " (" + ", ".join([f"{key}: {value}" for key, value in extra_info.items() if value is not None]) + ")"
        super().__init__(msg)


class DigestDeadlineExceededError(ServerError):
    """The deadline passed before anything of the digest could be assembled."""

    def __init__(self, identity: RepositoryIdentity, deadline: float | None):
        super().__init__(
            message="The deadline passed before the repository metadata was retrieved.",
            extra_info={"identity": identity.full_name, "stage": "metadata", "deadline": f"{deadline}s"},
        )


class MissingTokenError(ServerError):
    """No GitHub token is configured for the server."""

    def __init__(self):
        super().__init__(message="GITHUB_TOKEN or GITHUB_PERSONAL_ACCESS_TOKEN must be set to synthesize digests.")
