class AccessError(Exception):
    """Base class for identity and visibility failures."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class Unauthenticated(AccessError):
    """No valid session is attached to the request."""

    status_code = 401


class Forbidden(AccessError):
    """Authenticated, but the caller's role does not allow the action."""

    status_code = 403


class InvalidCategory(AccessError):
    status_code = 400


class UnknownUser(AccessError):
    status_code = 404
