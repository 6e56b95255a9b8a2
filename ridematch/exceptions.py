"""Errors raised by the ride matching core."""

RULE_ACTIVE_RIDE_EXISTS = "active_ride_exists"
RULE_RATE_LIMITED = "rate_limited"
RULE_PICKUP_REQUIRED = "pickup_required"
RULE_INVALID_STATUS = "invalid_status"
RULE_REASON_REQUIRED = "reason_required"
RULE_DRIVER_UNAVAILABLE = "driver_unavailable"
RULE_NOT_A_DRIVER = "not_a_driver"
RULE_STATUS_CONFLICT = "status_conflict"


class RideMatchError(Exception):
    """Base class; `status_code` is what the HTTP layer answers with."""
    status_code = 400


class ValidationError(RideMatchError):
    """Input has the wrong shape or is out of range. Nothing was changed."""
    status_code = 422


class PreconditionFailed(RideMatchError):
    """A state-machine guard rejected the operation. Nothing was changed."""

    def __init__(self, rule: str, message: str):
        super().__init__(message)
        self.rule = rule


class RateLimited(PreconditionFailed):
    status_code = 429

    def __init__(self, message: str):
        super().__init__(RULE_RATE_LIMITED, message)


class Conflict(PreconditionFailed):
    """A conditional update matched no row: another caller changed it first."""
    status_code = 409

    def __init__(self, message: str):
        super().__init__(RULE_STATUS_CONFLICT, message)


class NotFound(RideMatchError):
    status_code = 404


class UpstreamUnavailable(RideMatchError):
    """The geocoding/routing provider failed or is not configured."""
    status_code = 503
