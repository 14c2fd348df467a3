"""
Error taxonomy for workspace commands.

Every error carries a user-facing ``detail`` message. Command handlers catch
them where the operation was issued and surface the message as a toast.
"""
from typing import Optional


class WorkspaceError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationFailed(WorkspaceError):
    """A required field is empty or a request is inconsistent; nothing was written."""


class NotFound(WorkspaceError):
    status_code = 404


class NotSignedIn(WorkspaceError):
    status_code = 401

    def __init__(self, detail: str = "Not signed in"):
        super().__init__(detail)


class AttachmentTooLarge(WorkspaceError):
    status_code = 413

    def __init__(self, name: str, size: int, limit: int):
        super().__init__(f'"{name}" is too large (max {limit / (1024 * 1024):.1f}MB)')
        self.name = name
        self.size = size
        self.limit = limit


class BackendError(WorkspaceError):
    status_code = 503

    def __init__(self, detail: str, cause: Optional[BaseException] = None):
        super().__init__(detail)
        self.cause = cause
