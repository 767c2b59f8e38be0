"""Exception hierarchy used across the SLAM engine."""


class SLAMError(Exception):
    """Base class for all errors raised by vislam."""


class ConfigError(SLAMError):
    """Invalid or unknown configuration values."""


class PersistenceNotEnabledError(SLAMError):
    """A persistence operation was called while persistence is disabled."""

    def __init__(self, operation):
        super().__init__(
            f"Cannot {operation}: persistence is not enabled in the SLAM configuration")
        self.operation = operation


class StorageError(SLAMError):
    """The storage backend failed to read or write a map."""


class MapNotFoundError(StorageError):
    """No stored map exists under the requested id."""

    def __init__(self, map_id):
        super().__init__(f"Map not found: {map_id}")
        self.map_id = map_id


class MapSizeExceededError(StorageError):
    """The serialized map is larger than the configured cap."""

    def __init__(self, size, limit):
        super().__init__(f"Map size ({size} bytes) exceeds maximum ({limit} bytes)")
        self.size = size
        self.limit = limit


class MapCorruptedError(StorageError):
    """A stored map failed its integrity check."""
