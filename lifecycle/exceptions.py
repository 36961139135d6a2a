"""Exceptions raised by the order and position lifecycle engines."""


class PayloadError(ValueError):
    """Raised when a stored JSON payload cannot be decoded into its typed form."""
    pass


class ConditionalOrderError(ValueError):
    """Raised when a conditional order request is rejected."""
    pass


class ReplacementChainError(ValueError):
    """Raised when linking two orders would corrupt a replacement chain."""
    pass
