"""
Error taxonomy for the attempt core.

Each class carries the HTTP status the API layer answers with; the core raises
them and never retries.
"""


class PicrossError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationFailed(PicrossError):
    """Malformed or out-of-range input, rejected before any write."""
    status_code = 400


class Conflict(PicrossError):
    """Transition attempted from the wrong state, or lost a race."""
    status_code = 409


class NotFound(PicrossError):
    """Unknown id, or a row the caller does not own."""
    status_code = 404


class InternalError(PicrossError):
    """Stored data violates an invariant."""
    status_code = 500
