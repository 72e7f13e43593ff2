class NearHelpError(Exception):
    """Base for all domain errors raised by the presence/proximity core."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidCoordinate(NearHelpError):
    status_code = 400
    code = "invalid_coordinate"


class StoreUnavailable(NearHelpError):
    """Transient failure talking to the position store. Retry with backoff."""

    status_code = 503
    code = "store_unavailable"


class Unauthenticated(NearHelpError):
    status_code = 401
    code = "unauthenticated"


class StaleWrite(NearHelpError):
    """A newer write for the same entity already landed. Callers drop it."""

    status_code = 409
    code = "stale_write"


class NotPresent(NearHelpError):
    status_code = 409
    code = "not_present"


class InvalidTransition(NearHelpError):
    code = "invalid_transition"


class AnchorNotFound(NearHelpError):
    status_code = 404
    code = "help_request_not_found"


class NotAnchorOwner(NearHelpError):
    status_code = 403
    code = "not_help_request_owner"


class AuthUnavailable(NearHelpError):
    """Signing keys could not be fetched. Transient, like StoreUnavailable."""

    status_code = 503
    code = "auth_unavailable"


class ProfileNotFound(NearHelpError):
    status_code = 404
    code = "profile_not_found"


class UsernameTaken(NearHelpError):
    status_code = 409
    code = "username_taken"
