"""OrgBrain exception hierarchy.

All exceptions inherit from OrgBrainError and carry a three-part structure:
message (what happened), detail (technical context), suggestion (what to do next).
"""


class OrgBrainError(Exception):
    """Base exception for all OrgBrain errors."""

    def __init__(
        self,
        message: str,
        detail: str | None = None,
        suggestion: str | None = None,
    ) -> None:
        self.message = message
        self.detail = detail
        self.suggestion = suggestion
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.detail:
            parts.append(f"Detail: {self.detail}")
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return " | ".join(parts)


class DatabaseError(OrgBrainError):
    """Error related to database operations."""

    def __init__(
        self,
        message: str = "A database error occurred",
        detail: str | None = None,
        suggestion: str | None = "Check database connectivity and encryption key",
    ) -> None:
        super().__init__(message, detail, suggestion)


class KnowledgeBaseNotFoundError(OrgBrainError):
    """Raised when a knowledge base cannot be found."""

    def __init__(
        self,
        message: str = "Knowledge base not found",
        detail: str | None = None,
        suggestion: str | None = "Create the organization's knowledge base first",
    ) -> None:
        super().__init__(message, detail, suggestion)


class EmbeddingError(OrgBrainError):
    """Raised when embedding generation fails.

    Callers performing duplicate detection treat this as non-fatal and fall
    back to lexical similarity.
    """

    def __init__(
        self,
        message: str = "Embedding generation failed",
        detail: str | None = None,
        suggestion: str | None = "Check the embedding model is installed and loadable",
    ) -> None:
        super().__init__(message, detail, suggestion)


class ConcurrentUpdateError(OrgBrainError):
    """Raised when a version-checked knowledge base write loses a race."""

    def __init__(
        self,
        message: str = "Knowledge base was modified concurrently",
        detail: str | None = None,
        suggestion: str | None = "Retry the application run",
    ) -> None:
        super().__init__(message, detail, suggestion)
