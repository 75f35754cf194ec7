"""Common exceptions."""

from typing import Any

# isort: unique-list
__all__ = ['ChannelError', 'DuplexBaseException']


class DuplexBaseException(Exception):
    """Base exception for all errors raised by this package.

    Parameters:
        message: A human-readable description of the exception.
        context: Machine-readable data.
    """

    def __init__(self, message: str, /, **context: Any) -> None:
        super().__init__(message)
        self.context = context

    def __repr__(self, /) -> str:
        cls_name, args = self.__class__.__name__, [repr(self.args[0])]
        args.extend(f'{name}={value!r}' for name, value in self.context.items())
        return f'{cls_name}({", ".join(args)})'


class ChannelError(DuplexBaseException):
    """The channel transport could not send or receive a message."""
