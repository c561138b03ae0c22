"""Error kinds surfaced by the hub. Each carries the HTTP status both fronts map it to."""

from typing import Dict, Optional


class HubError(Exception):
    """Base class for classified hub failures."""

    status_code = 500

    def __init__(self, message: str = "", headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.headers = headers


class NotFound(HubError):
    status_code = 404


class Conflict(HubError):
    status_code = 409


class Forbidden(HubError):
    status_code = 403


class Unauthenticated(HubError):
    status_code = 401


class BadRequest(HubError):
    status_code = 400


class Unsupported(HubError):
    status_code = 415


class QuotaExceeded(HubError):
    # Insufficient Storage
    status_code = 507


class NotModified(HubError):
    status_code = 304


class Internal(HubError):
    status_code = 500


class MethodNotAllowed(HubError):
    # WebDAV MKCOL on an existing resource
    status_code = 405


class PreconditionFailed(HubError):
    # WebDAV COPY/MOVE with Overwrite: F onto an existing resource
    status_code = 412
