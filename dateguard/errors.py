"""Error taxonomy shared by the services and the HTTP layer."""


class DateGuardError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(DateGuardError):
    status_code = 400


class UnauthorizedError(DateGuardError):
    status_code = 403

    def __init__(self, detail: str = "Forbidden"):
        super().__init__(detail)


class NotFoundError(DateGuardError):
    status_code = 404


class ConflictError(DateGuardError):
    status_code = 409


class DependencyError(DateGuardError):
    """An outside service (SMS, directory) failed and nothing could be returned."""

    status_code = 502
