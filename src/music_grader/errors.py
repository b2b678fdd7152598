class ValidationError(ValueError):
    """Raised for malformed caller input: reference timeline, tolerances, settings or imported history."""


class PersistenceError(OSError):
    """Raised by a store when it cannot read or write a key."""
