"""Exception types raised by the field engine.

Families:
- FieldValidationError: bad user input for one field. The request layer turns
  it into a structured per-field error (HTTP 422).
- ConfigurationError: broken configuration or data (missing workflow handler,
  unknown category, corrupt ancestor closure). Not recoverable locally.
- CommentNotFoundError / StaleCommentError: a comment edit that names a
  missing or superseded comment (HTTP 404 / 409).
"""

from typing import Any, Dict, Optional


class FieldValidationError(Exception):
    """Raised when submitted data is invalid for a ticket field."""

    def __init__(self, field_name: Optional[str], message: str):
        super().__init__(message)
        self.field_name = field_name
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field_name, "message": self.message}


class MissingFieldDataError(FieldValidationError):
    """Raised when a required field has no value."""

    def __init__(self, field_name: Optional[str], message: Optional[str] = None):
        super().__init__(
            field_name, message or f"Missing data for field '{field_name}'"
        )


class InvalidTransitionError(FieldValidationError):
    """Raised when a status change violates the ticket's workflow."""

    pass


class ConfigurationError(Exception):
    """Raised on configuration or data integrity problems."""

    pass


class CommentNotFoundError(Exception):
    """Raised when an ID does not name a comment of the ticket."""

    pass


class StaleCommentError(Exception):
    """Raised when editing a comment version that has been superseded."""

    pass
