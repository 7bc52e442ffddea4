"""Error taxonomy shared by the check-in core and the HTTP layer."""


class CheckinError(Exception):
    """Base class. `status_code` is what the HTTP layer answers with."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(CheckinError):
    status_code = 400


class NotFoundError(CheckinError):
    status_code = 404


class IntervalViolation(CheckinError):
    """Turned into a refused `CheckInResult` by the coordinator; never reaches HTTP."""

    def __init__(self, wait_reason: str):
        super().__init__(wait_reason)
        self.wait_reason = wait_reason


class StoreConflictError(CheckinError):
    status_code = 503


# Raised by transports and counted as failures by the dispatcher; neither reaches HTTP.
class DeliveryError(CheckinError):
    pass


class ConfigurationGap(CheckinError):
    pass
