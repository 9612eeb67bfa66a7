"""Error taxonomy for the personalization engine."""


class CinerankError(Exception):
    code: str = "cinerank_error"

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code


class SourceUnavailable(CinerankError):
    """A scoring source timed out or errored; excluded from the request."""
    code = "source_unavailable"

    def __init__(self, source: str, message: str = ""):
        super().__init__(message or f"Source '{source}' did not respond")
        self.source = source


class MetadataMissing(CinerankError):
    """An item lacks genre/keyword data needed for fine-grained analysis."""
    code = "metadata_missing"

    def __init__(self, item_id: int, message: str = ""):
        super().__init__(message or f"No genre/keyword metadata for item {item_id}")
        self.item_id = item_id


class NoCandidates(CinerankError):
    code = "no_candidates"


class InvalidState(CinerankError):
    """Persisted learning state violates its bounds."""
    code = "invalid_state"

    def __init__(self, user_id: str, field: str, value, message: str = ""):
        super().__init__(message or f"Invalid {field}={value!r} for user '{user_id}'")
        self.user_id = user_id
        self.field = field
        self.value = value
