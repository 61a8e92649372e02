class SyncError(RuntimeError):
    """Base class for every failure raised by the sync engine."""


class ConfigurationError(SyncError):
    """
    A fatal setup problem. Retrying cannot fix it, so the retry loop
    re-raises it immediately.
    """


class RetentionWindowError(ConfigurationError):
    """The requested range needs buckets older than the retention window keeps."""


class UnknownTypeError(ConfigurationError):
    """A requested type has no table in the warehouse."""


class DataFileError(SyncError):
    """An object key does not follow the <type>/d=<date>/h=<hour>/<name>.<ext> convention."""


class UnsupportedFormatError(SyncError):
    """The warehouse dialect cannot bulk-load files with this extension."""


class RetriesExhaustedError(SyncError):
    def __init__(self, description: str, attempts: int, last_error: BaseException | None):
        super().__init__(f"Failed to {description} after {attempts} attempts: {last_error}")
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
