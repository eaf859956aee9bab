"""Exception taxonomy for the mirror pipeline.

A filtered job is not an error; it is reported through the engine's
``Filtered`` outcome. Everything below fails the job it was raised in and
nothing else.
"""


class MirrorError(Exception):
    """Base class for every error raised by sitemirror."""


class ConfigError(MirrorError):
    """Configuration file or arguments could not be turned into a MirrorConfig."""


class ValidationError(MirrorError):
    """Input the pipeline cannot process (bad URL, unknown content type)."""


class InvalidUrlError(ValidationError):
    """URL could not be parsed or is not an http(s) URL with a host."""


class UnsupportedMimeTypeError(ValidationError):
    """MIME type is neither parseable nor on the pass-through list."""

    def __init__(self, mime_type: str | None, url: str | None = None) -> None:
        self.mime_type = mime_type
        self.url = url
        where = f" ({url})" if url else ""
        super().__init__(f"Unsupported content type: {mime_type or 'undefined'}{where}")


class FetchError(MirrorError):
    """Network failure, timeout, or an error status from the server."""

    def __init__(self, message: str, *, url: str | None = None, status: int | None = None) -> None:
        self.url = url
        self.status = status
        super().__init__(message)


class CacheConsistencyError(MirrorError):
    """Expected cache entry is missing; the pipeline ran stages out of order."""


class NotFoundError(CacheConsistencyError, KeyError):
    """Cache has no entry for the requested key."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"No data or metadata found in cache for {key}")

    def __str__(self) -> str:
        return self.args[0]


class RewriteError(MirrorError):
    """A reference cannot be turned into a mirror-relative path."""


class OutOfScopeReferenceError(RewriteError):
    """Reference points outside every allowed domain."""

    def __init__(self, reference: str, target: str) -> None:
        self.reference = reference
        self.target = target
        super().__init__(f"Reference {reference!r} resolves outside the mirror: {target}")
