class GradingError(Exception):
    """Base class for grade engine failures."""


class ValidationError(GradingError):
    """Input rejected before anything was written.

    `details` lists every violated constraint so callers can show all of them.
    """

    def __init__(self, details):
        if isinstance(details, str):
            details = [details]
        self.details = list(details)
        super().__init__("; ".join(self.details))


class DataIntegrityError(GradingError):
    """A stored record cannot be used as-is (orphaned or corrupt)."""

    def __init__(self, message, raw_score_id=None, assignment_id=None):
        self.message = message
        self.raw_score_id = raw_score_id
        self.assignment_id = assignment_id
        super().__init__(message)

    def to_dict(self):
        return {
            "raw_score_id": self.raw_score_id,
            "assignment_id": self.assignment_id,
            "reason": self.message,
        }


class ConcurrentModificationError(GradingError):
    """Another save changed the category table first."""


class NotFoundError(GradingError):
    """Referenced class, student or enrollment does not exist."""
