from __future__ import annotations

from typing import Any


class PtwError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(PtwError):
    status_code = 400
    code = "validation_error"


class BatchSizeMismatchError(ValidationError):
    code = "batch_size_mismatch"

    def __init__(self, file_count: int, metadata_count: int) -> None:
        super().__init__(
            f"Number of files ({file_count}) does not match number of metadata entries ({metadata_count})",
            file_count=file_count,
            metadata_count=metadata_count,
        )
        self.file_count = file_count
        self.metadata_count = metadata_count


class InvalidMetadataError(ValidationError):
    code = "invalid_metadata"


class MissingFieldError(ValidationError):
    code = "missing_field"

    def __init__(self, field: str, index: int | None = None) -> None:
        where = f" in metadata entry {index}" if index is not None else ""
        super().__init__(f"Missing required field '{field}'{where}", field=field, index=index)
        self.field = field
        self.index = index


class UnsupportedMediaTypeError(ValidationError):
    code = "unsupported_media_type"


class FileTooLargeError(ValidationError):
    code = "file_too_large"


class NotFoundError(PtwError):
    status_code = 404
    code = "not_found"


class ConflictError(PtwError):
    status_code = 409
    code = "conflict"


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"

    def __init__(self, current_state: str, trigger: str) -> None:
        super().__init__(
            f"illegal transition: cannot {trigger} a permit in state {current_state}",
            current_state=str(current_state),
            trigger=str(trigger),
        )
        self.current_state = current_state
        self.trigger = trigger


class AuthError(PtwError):
    status_code = 401
    code = "auth_error"


class PermissionDeniedError(PtwError):
    status_code = 403
    code = "permission_denied"


class StorageError(PtwError):
    status_code = 500
    code = "storage_error"


class PersistenceError(PtwError):
    status_code = 500
    code = "persistence_error"
