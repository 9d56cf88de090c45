"""Exceptions raised by mailindex commands."""


class MailIndexError(Exception):
    """Base exception for all mailindex errors."""


class ArgumentError(MailIndexError):
    """Raised for an unknown option or a bad option value."""


class ConfigurationError(MailIndexError):
    """Raised when the configuration cannot be located or loaded."""


class StoreOpenError(MailIndexError):
    """Raised when the index store is missing, corrupt or incompatible."""


class AllocationError(MailIndexError):
    """Raised when a query cannot be built for lack of memory."""


class QueryCompileError(MailIndexError):
    """Raised when a search query is rejected by the query compiler."""
