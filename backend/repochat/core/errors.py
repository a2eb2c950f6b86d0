from __future__ import annotations


class RepochatError(RuntimeError):
    pass


class RepoValidationError(RepochatError):
    """Bad input caught before any network call; no session state is touched."""


class SessionValidationError(RepoValidationError):
    pass


class RepositoryError(RepochatError):
    pass


class RepositoryNotFoundError(RepositoryError):
    pass


class LLMUpstreamError(RepochatError):
    pass


class ToolExecutionError(RepochatError):
    pass


class FileResolutionError(ToolExecutionError):
    pass


class SessionNotFoundError(RepochatError):
    pass


class SessionBusyError(RepochatError):
    pass
