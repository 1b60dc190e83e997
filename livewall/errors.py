"""
Domain exceptions.

Every error carries the message shown to the guest or organizer and the HTTP
status the routes answer with. Messages for guests are German, matching the
upload page.
"""


class LiveWallError(Exception):
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(LiveWallError):
    status_code = 400


class AuthenticationRequired(LiveWallError):
    status_code = 401


class PermissionDenied(LiveWallError):
    status_code = 403


class NotFound(LiveWallError):
    status_code = 404


class StoreError(LiveWallError):
    """Database connection or query failure."""
    status_code = 500


class StorageError(LiveWallError):
    """Media object write, removal or signing failure."""
    status_code = 500
