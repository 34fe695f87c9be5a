class SecureShareError(Exception):
    """Base class."""


class ValidationError(SecureShareError):
    """Malformed input or a missing required field."""


class NotFoundError(SecureShareError):
    pass


class ForbiddenError(SecureShareError):
    pass


class KeyUnwrapError(SecureShareError):
    """A wrapped file key could not be opened with the current master secret."""


class KeyMismatchError(SecureShareError):
    """The presented key does not open the file."""


class StorageError(SecureShareError):
    pass
