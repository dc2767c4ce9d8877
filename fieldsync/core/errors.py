class FieldSyncError(Exception):
    pass


class InvalidTenant(FieldSyncError, ValueError):
    def __init__(self, code) -> None:
        self.code = code
        super().__init__(f"Code agence invalide : {code}")


class DuplicateJob(FieldSyncError):
    def __init__(self, job_type: str, form_id: int, data_id: int, media_name: str | None = None) -> None:
        self.job_type = job_type
        self.form_id = form_id
        self.data_id = data_id
        self.media_name = media_name
        key = f"{form_id}/{data_id}" + (f"/{media_name}" if media_name else "")
        super().__init__(f"Job {job_type} deja existant pour {key}")


class InvalidTransition(FieldSyncError):
    def __init__(self, job_id, current: str, target: str) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Transition invalide pour le job {job_id}: {current} -> {target}")


class FetchError(FieldSyncError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class BatchInsertError(FieldSyncError):
    def __init__(self, agency: str, row_count: int, message: str) -> None:
        self.agency = agency
        self.row_count = row_count
        super().__init__(message)


class StorageError(FieldSyncError):
    """Database failure with the context it happened in."""

    def __init__(self, operation: str, message: str, agency: str | None = None, table: str | None = None) -> None:
        self.operation = operation
        self.agency = agency
        self.table = table
        context = " ".join(
            f"{key}={value}" for key, value in (("operation", operation), ("agency", agency), ("table", table)) if value
        )
        super().__init__(f"{message} ({context})")
