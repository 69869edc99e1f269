"""Exception classes for the instance store and its engines."""


class InstanceStoreError(Exception):
    """Base exception for all instance store errors."""

    pass


class ValidationError(InstanceStoreError, ValueError):
    """Raised when caller input is malformed."""

    def __init__(self, field: str, message: str):
        """Initialize with the offending parameter and a message."""
        self.field = field
        super().__init__(f"Invalid {field}: {message}")


class MembershipError(InstanceStoreError):
    """Raised when a key exists but its instance is not of the requested class."""

    def __init__(self, klass: str, key: object):
        """Initialize with the requested class and key."""
        self.klass = klass
        self.key = key
        super().__init__(
            f"Found an instance with key {key!r} but not belonging to class {klass!r}"
        )


class UsageError(InstanceStoreError):
    """Raised when an operation is invoked in an invalid state or context."""

    pass


class LifecycleError(InstanceStoreError):
    """Raised when the store record cannot be created or upgraded."""

    def __init__(self, message: str, version: int | None = None):
        """Initialize with a message and the stored version, if known."""
        self.version = version
        super().__init__(message)


class EngineError(InstanceStoreError):
    """Base exception for document store engine errors."""

    pass


class NotFoundError(EngineError):
    """Raised when a document is missing and errors were requested."""

    def __init__(self, collection: str, key: object):
        """Initialize with collection and key."""
        self.collection = collection
        self.key = key
        super().__init__(f"Document not found: {collection}/{key!r}")


class AlreadyExistsError(EngineError):
    """Raised when a document already exists and errors were requested."""

    def __init__(self, collection: str, key: object):
        """Initialize with collection and key."""
        self.collection = collection
        self.key = key
        super().__init__(f"Document already exists: {collection}/{key!r}")


class QueryError(EngineError):
    """Raised when no declared index can serve a query."""

    pass


class UnsupportedEngineError(EngineError):
    """Raised when a connection URL names an unknown engine."""

    def __init__(self, url: str):
        """Initialize with the rejected URL."""
        self.url = url
        super().__init__(f"No document store engine for URL: {url}")
