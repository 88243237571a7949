"""Error kinds raised by the indexing and query core."""

REBUILD_HINT = "run `cearch index` to rebuild the index"


class CearchError(Exception):
    """Base class for every error the core reports to its caller."""

    hint: str | None = None

    def __str__(self) -> str:
        message = super().__str__()
        if self.hint:
            return f"{message} ({self.hint})"
        return message


class ParseError(CearchError):
    """Raised when a single file cannot be read or parsed.

    Non-fatal to an index run: the file is skipped and counted.
    """

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message


class EmbedError(CearchError):
    """Raised when the embedding backend fails for a batch."""

    pass


class DimensionMismatch(CearchError):
    """Raised when the stored vector dimension differs from the active model."""

    hint = REBUILD_HINT

    def __init__(self, stored: int, active: int) -> None:
        super().__init__(
            f"Index was built with {stored}-dimensional vectors but the "
            f"active embedding model produces {active}"
        )
        self.stored = stored
        self.active = active


class CorruptIndex(CearchError):
    """Raised when the persisted index fails its integrity checks."""

    hint = REBUILD_HINT


class IndexUnavailable(CearchError):
    """Raised when a query is attempted without a loaded index."""

    hint = REBUILD_HINT


class NotFound(IndexUnavailable):
    """Raised when no index has been built for the repository yet."""

    pass
