class TripConnectError(Exception):
    """Base class for every error the app surfaces to the user."""


class InsecureContextError(TripConnectError):
    pass


class PermissionDeniedError(TripConnectError):
    pass


class WriteError(TripConnectError):
    def __init__(self, message, permission_denied=False):
        super().__init__(message)
        self.permission_denied = permission_denied


class ReadError(TripConnectError):
    pass


class NotFoundError(TripConnectError):
    pass


class ValidationError(TripConnectError):
    pass


class PositionUnavailableError(TripConnectError):
    pass


class PositionTimeoutError(TripConnectError):
    pass


class MapNotReadyError(TripConnectError):
    pass
