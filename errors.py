"""
Error kinds raised by the lifecycle, billing and provider layers.

Each carries the HTTP status the API answers with; main.py registers one
handler for the whole hierarchy.
"""


class PickupError(Exception):
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class AuthenticationRequired(PickupError):
    status_code = 401


class AuthorizationDenied(PickupError):
    status_code = 403


class NotFound(PickupError):
    status_code = 404


class InvalidStateTransition(PickupError):
    status_code = 409

    def __init__(self, current: str, target: str, reason: str = ""):
        message = f"Cannot move request from '{current}' to '{target}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.target = target


class ValidationError(PickupError):
    status_code = 422


class ProviderError(PickupError):
    status_code = 502
