"""Exceptions raised by the earning pipeline and its admin entry points"""


class LinkEarnError(Exception):
    """Base class for domain errors"""

    status_code = 500

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        self.message = message
        self.reason = reason

    def to_dict(self) -> dict:
        payload = {'status': 'error', 'message': self.message}
        if self.reason:
            payload['reason'] = self.reason
        return payload


class NotFound(LinkEarnError):
    """A referenced link, user, rate override, visit or payout does not exist"""

    status_code = 404


class PreconditionFailed(LinkEarnError):
    """The operation is not allowed in the current state; nothing was changed"""

    status_code = 400


class OwnerInactive(PreconditionFailed):
    status_code = 403

    def __init__(self, message: str = 'Link owner is inactive'):
        super().__init__(message, reason='owner_inactive')


class TransactionFailure(LinkEarnError):
    """The database rejected or timed out a transaction; it was rolled back as a whole"""

    status_code = 503
