"""Error taxonomy shared by the session coordination services."""

from typing import Optional


class CoordinationError(Exception):
    """Base class for failures surfaced to callers as descriptive values."""


class DocumentNotFoundError(CoordinationError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class DocumentExistsError(CoordinationError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} already exists")
        self.collection = collection
        self.doc_id = doc_id


class TransactionConflictError(CoordinationError):
    """Optimistic transaction kept losing compare-and-swap races."""


class SessionStateError(CoordinationError):
    """Operation is not valid for the session's current lifecycle state."""


class SessionConflictError(CoordinationError):
    """Another participant won a race for the same session transition."""


class NotAuthorizedError(CoordinationError):
    """Ownership check failed; raised before any mutation is attempted."""


class DuplicateRatingError(CoordinationError):
    """A participant already rated their partner for this session."""


class GenerationError(CoordinationError):
    """Text generation request failed or returned an unusable payload."""


class TransportError(CoordinationError):
    """Media transport rejected a join/leave request or reported an error."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code
