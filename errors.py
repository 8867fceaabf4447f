"""Domain errors raised by the service layer.

The HTTP layer maps each of these to a response; nothing here knows about
status codes.
"""


class ClinicError(Exception):
    """Base class for every error the front desk reports to a caller."""


class InvalidVisitError(ClinicError):
    """Input rejected before anything was written."""


class ConfirmationRequiredError(InvalidVisitError):
    """A destructive action was requested without explicit confirmation."""


class VisitNotFoundError(ClinicError):
    def __init__(self, key: str):
        super().__init__(f"Visit {key} not found")
        self.key = key


class PrescriptionNotFoundError(ClinicError):
    def __init__(self, key: str):
        super().__init__(f"Prescription {key} not found")
        self.key = key


class InvalidTransitionError(ClinicError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move a visit from {current} to {requested}")
        self.current = current
        self.requested = requested


class TokenConflictError(ClinicError):
    """Every attempt to claim the next token collided with another booking."""


class StorageError(ClinicError):
    """The storage backend failed for a reason other than a lookup miss."""
