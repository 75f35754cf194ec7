"""Message shapes exchanged on a channel.

A channel carries discrete structured messages (mappings). This module defines the
three shapes the RPC layer understands and converts between them and their wire form:

.. code-block:: text

    {"type": "RPCRequest", "asyncID": str, "method": str, "args": any, "cfg": {...}}
    {"type": "RPCResponse", "asyncID": str, "result"?: any, "error"?: str}
    {"type": "log", "data": any}

``result`` and ``error`` are mutually exclusive. A response carrying neither (or one
whose ``error`` is not a string) denotes success with a ``None`` result.

Messages are serialized with :mod:`cbor2` whenever they cross a process boundary.
"""

import asyncio
import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Union

import cbor2

# isort: unique-list
__all__ = [
    'CallConfig',
    'LogRecord',
    'Message',
    'MessageType',
    'Request',
    'Response',
    'Value',
    'decode',
    'encode',
    'parse_message',
]

Value = Union[None, bool, int, float, str, bytes, list['Value'], dict[str, 'Value']]
"""A serializable argument or result. Tuples are accepted but arrive as lists."""
Message = dict[str, Any]


class MessageType(str, enum.Enum):
    """The ``type`` discriminator of a message.

    Attributes:
        REQUEST: Asks the peer to execute a registered function.
        RESPONSE: Carries the outcome of a request back to its caller.
        LOG: Carries a log event for the peer to print. Not part of the call protocol.
    """

    REQUEST = 'RPCRequest'
    RESPONSE = 'RPCResponse'
    LOG = 'log'


@dataclass(frozen=True)
class CallConfig:
    """Per-call configuration.

    The options are opaque to the RPC layer and only interpreted by the function
    being called.

    Parameters:
        s: A string-valued context hint.
        t: A string-valued context hint.
        o: A numeric hint.
        l: A boolean flag.
        extra: Unrecognized options, carried through unchanged.
    """

    s: Optional[str] = None
    t: Optional[str] = None
    o: Optional[float] = None
    l: Optional[bool] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    KEYS: ClassVar[tuple[str, ...]] = ('s', 't', 'o', 'l')

    def to_wire(self, /) -> dict[str, Any]:
        cfg = dict(self.extra)
        for key in self.KEYS:
            value = getattr(self, key)
            if value is not None:
                cfg[key] = value
        return cfg

    @classmethod
    def from_wire(cls, cfg: Any, /) -> 'CallConfig':
        """Build a configuration from its wire form.

        Anything other than a mapping is treated as an empty configuration.

        Examples:
            >>> CallConfig.from_wire({'s': 'main', 'l': True, 'x': 1})
            CallConfig(s='main', t=None, o=None, l=True, extra={'x': 1})
            >>> CallConfig.from_wire(None)
            CallConfig(s=None, t=None, o=None, l=None, extra={})
        """
        if not isinstance(cfg, Mapping):
            return cls()
        known = {key: cfg[key] for key in cls.KEYS if key in cfg}
        extra = {key: value for key, value in cfg.items() if key not in cls.KEYS}
        return cls(**known, extra=extra)


@dataclass(frozen=True)
class Request:
    """A request to execute the peer's function ``method``.

    ``method`` is kept as received. A name that is not a string matches no function.
    """

    call_id: str
    method: Value
    args: Value = None
    cfg: CallConfig = field(default_factory=CallConfig)

    def to_wire(self, /) -> Message:
        return {
            'type': MessageType.REQUEST.value,
            'asyncID': self.call_id,
            'method': self.method,
            'args': self.args,
            'cfg': self.cfg.to_wire(),
        }


@dataclass(frozen=True)
class Response:
    """The outcome of a request. ``error`` is set iff the call failed."""

    call_id: str
    result: Value = None
    error: Optional[str] = None

    def to_wire(self, /) -> Message:
        message: Message = {'type': MessageType.RESPONSE.value, 'asyncID': self.call_id}
        if self.error is not None:
            message['error'] = self.error
        else:
            message['result'] = self.result
        return message


@dataclass(frozen=True)
class LogRecord:
    """A log event forwarded from a context that does not own the console."""

    data: Any

    def to_wire(self, /) -> Message:
        return {'type': MessageType.LOG.value, 'data': self.data}


def _get_str(message: Mapping[str, Any], key: str, /) -> str:
    value = message.get(key)
    if not isinstance(value, str):
        raise ValueError(f'message field {key!r} must be a string')
    return value


def parse_message(message: Any, /) -> Union[Request, Response, LogRecord, None]:
    """Parse a message received from the channel.

    Returns:
        The parsed message, or ``None`` if the message type is not recognized. Unknown
        types are reserved for ancillary traffic.

    Raises:
        ValueError: If the message is not a mapping or lacks a required field.

    Examples:
        >>> parse_message({'type': 'RPCResponse', 'asyncID': 'a', 'error': 'boom'})
        Response(call_id='a', result=None, error='boom')
        >>> parse_message({'type': 'RPCResponse', 'asyncID': 'a', 'error': None})
        Response(call_id='a', result=None, error=None)
        >>> parse_message({'type': 'heartbeat'}) is None
        True
        >>> parse_message(['RPCRequest'])
        Traceback (most recent call last):
          ...
        ValueError: message must be a mapping
    """
    if not isinstance(message, Mapping):
        raise ValueError('message must be a mapping')
    try:
        message_type = MessageType(message.get('type'))
    except ValueError:
        return None
    if message_type is MessageType.REQUEST:
        return Request(
            _get_str(message, 'asyncID'),
            message.get('method'),
            message.get('args'),
            CallConfig.from_wire(message.get('cfg')),
        )
    if message_type is MessageType.RESPONSE:
        error = message.get('error')
        return Response(
            _get_str(message, 'asyncID'),
            message.get('result'),
            error if isinstance(error, str) else None,
        )
    return LogRecord(message.get('data'))


def encode(obj: Any, /) -> bytes:
    """Encode an object as a CBOR-encoded buffer.

    Unlike :func:`decode`, encoding runs on the caller's thread so that concurrent
    senders on one channel keep their send order.

    Raises:
        cbor2.CBOREncodeError: If the encoding fails.
    """
    return cbor2.dumps(obj)


async def decode(buf: bytes, /) -> Any:
    """Decode a CBOR-encoded buffer in the default executor.

    Raises:
        cbor2.CBORDecodeError: If the decoding fails.
    """
    return await asyncio.to_thread(cbor2.loads, buf)
