"""
Errors raised by the exchange layer itself.

Anything coming from the broker or the connection is a pika exception and
is handed to the caller as-is.
"""


class MissingOverrideError(Exception):
    """Raised when a subclass did not declare a required attribute."""

    def __init__(self, owner, attribute, hint):
        self.owner = owner
        self.attribute = attribute
        super().__init__(
            f"{owner} must override `{attribute}`, returning {hint}"
        )


class InvalidDeclarationError(ValueError):
    """Raised when an exchange type or binding kind is not supported."""
