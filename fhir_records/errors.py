from __future__ import annotations


class FhirRecordsError(Exception):
    """Base class for errors raised by the records core."""


class InvalidSearchParameter(FhirRecordsError, ValueError):
    """A search parameter could not be parsed (e.g. a malformed date)."""

    def __init__(self, name: str, value: str, reason: str | None = None):
        self.name = name
        self.value = value
        msg = f"Invalid {name}: {value}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class InvalidResourceError(FhirRecordsError, ValueError):
    """An inbound resource is missing a required linkage or carries an unusable value."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)
