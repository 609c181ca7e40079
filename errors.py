"""
Exceptions raised by the workspace core.

Each class carries the HTTP status and error code the API reports for it.
"""
from typing import List, Optional


class WorkspaceError(Exception):
    """Base class for every error the core raises."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class ValidationError(WorkspaceError):
    """Rejected before any store call: empty title, self-invite, missing field."""

    status_code = 400
    code = "INVALID_REQUEST"


class PermissionDenied(WorkspaceError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(WorkspaceError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(WorkspaceError):
    """The workspace changed since it was loaded (versioned writes only)."""

    status_code = 409
    code = "CONFLICT"


class StoreError(WorkspaceError):
    """The document store failed or refused a write."""

    status_code = 503
    code = "STORE_UNAVAILABLE"


class DocumentMissing(StoreError):
    """A write targeted a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id


class AuthenticationError(WorkspaceError):
    status_code = 401
    code = "UNAUTHORIZED"
