"""Domain error taxonomy shared by the importer, categorizer and API layers."""


class DomainError(Exception):
    """Base class for errors that carry a stable code and a user-facing message."""

    code = "DOMAIN_ERROR"
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None, user_message: str | None = None) -> None:
        """Initialize the error with an internal message and an optional user-facing one."""
        self.message = message or self.default_message
        self.user_message = user_message
        super().__init__(self.message)


class ValidationError(DomainError):
    """Malformed input, rejected before any side effect."""

    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class UnauthorizedError(DomainError):
    """Owner mismatch or missing owner."""

    code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class DuplicateFileError(DomainError):
    """Content fingerprint collides with a previous upload."""

    code = "DUPLICATE_FILE"
    default_message = "Duplicate file detected"

    def __init__(
        self,
        message: str | None = None,
        user_message: str | None = None,
        duplicate_of_document_id: str | None = None,
        match_type: str = "exact_image",
    ) -> None:
        """Initialize the error with the document it duplicates."""
        super().__init__(message, user_message)
        self.duplicate_of_document_id = duplicate_of_document_id
        self.match_type = match_type


class ExtractionFailure(DomainError):
    """The normalizer or completion service could not produce usable data."""

    code = "EXTRACTION_FAILED"
    default_message = "Could not extract transactions from the file"


class ScannedDocumentError(ExtractionFailure):
    """PDF has too little extractable text for text-based parsing."""

    code = "SCANNED_DOCUMENT"
    default_message = "PDF appears to be scanned and has no extractable text"


class EnqueueFailure(DomainError):
    """A job could not be submitted to the processing queue."""

    code = "ENQUEUE_FAILED"
    default_message = "Failed to enqueue job"


class FileFetchError(DomainError):
    """A source file could not be downloaded."""

    code = "FILE_FETCH_FAILED"
    default_message = "Failed to download file"


def to_user_message(error: BaseException) -> str:
    """Return the message that is safe to show to the owner."""
    if isinstance(error, DomainError):
        return error.user_message or error.message
    return str(error) or "Unexpected error. Please try again."
