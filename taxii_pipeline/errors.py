"""Exception hierarchy for the TAXII ingestion pipeline."""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class TAXIIConnectionError(PipelineError):
    """Network, DNS, TLS, timeout or non-2xx failure talking to a TAXII server."""


class AuthError(PipelineError):
    """The TAXII server rejected our credentials (HTTP 401/403)."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class ParseError(PipelineError):
    """Malformed JSON or an unrecognized envelope/bundle shape."""


class ObjectStoreError(PipelineError):
    """Persisting one object, relationship, IOC or state row failed."""

    def __init__(self, message: str, key: str = None):
        super().__init__(message)
        self.key = key


class PatternParseError(PipelineError):
    """An indicator pattern could not be split into clauses."""


class SchedulingError(PipelineError):
    """A collection is missing, disabled, or unreadable at poll time."""
