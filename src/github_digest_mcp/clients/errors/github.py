ExtraInfoType = dict[str, str | None]


class ClientError(Exception):
    """A request error from the GitHub Digest client."""

    def __init__(self, message: str, extra_info: ExtraInfoType | None = None):
        self.extra_info: ExtraInfoType = extra_info or {}
        msg = message
        if extra_info:
            msg += " (" + ", ".join([f"{key}: {value}" for key, value in extra_info.items() if value is not None]) + ")"
        super().__init__(msg)


class RequestError(ClientError):
    """A request error from the GitHub Digest client."""

    def __init__(self, action: str, message: str | None = None, extra_info: ExtraInfoType | None = None):
        if not extra_info:
            extra_info = {}
        super().__init__(message="A request error occured.", extra_info={"action": action, "message": message, **extra_info})


class ResourceNotFoundError(RequestError):
    """The repository does not exist or the token cannot access it."""

    def __init__(self, action: str, resource: str | None = None, extra_info: ExtraInfoType | None = None):
        if not extra_info:
            extra_info = {}
        super().__init__(
            action=action,
            message="The resource could not be found.",
            extra_info={"resource": resource, **extra_info},
        )


class TreeUnavailableError(RequestError):
    """The recursive tree of a repository could not be retrieved."""

    def __init__(self, resource: str, branch: str, message: str | None = None):
        super().__init__(action="Get tree", message=message, extra_info={"resource": resource, "branch": branch, "stage": "tree"})


class BlobUnavailableError(RequestError):
    """The content of a single file could not be retrieved."""

    def __init__(self, resource: str, sha: str, message: str | None = None, reason: str | None = None):
        self.reason: str = reason or "unknown error"
        super().__init__(action="Get blob", message=message, extra_info={"resource": resource, "sha": sha, "stage": "blob"})


def describe_failure(error: RequestError) -> str:
    """A short description of why a request failed: the HTTP status, or the kind of error that was raised."""

    if status_code := error.extra_info.get("status_code"):
        return f"HTTP {status_code}"

    cause: BaseException = error.__cause__ or error
    return type(cause).__name__
