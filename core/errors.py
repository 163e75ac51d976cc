class DriveLinkError(Exception):
    """Base for every error surfaced to API callers."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        data = {"status": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class Unauthenticated(DriveLinkError):
    code = "unauthenticated"
    status_code = 401


class InvalidArgument(DriveLinkError):
    code = "invalid-argument"
    status_code = 400


class FailedPrecondition(DriveLinkError):
    code = "failed-precondition"
    status_code = 412


class PermissionDenied(DriveLinkError):
    code = "permission-denied"
    status_code = 403


class Internal(DriveLinkError):
    code = "internal"
    status_code = 500
