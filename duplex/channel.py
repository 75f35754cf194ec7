"""Duplex message channels.

A channel links exactly two execution contexts and carries discrete structured
messages between them, preserving each sender's send order. Channels know nothing
about requests and responses; :class:`duplex.rpc.Endpoint` layers call semantics on
top of one.

Two implementations are provided:

* :class:`MemoryChannel`, a linked pair of in-process queues. Every message is
  copied through a CBOR round trip, so neither side can observe the other's objects.
* :class:`SocketChannel`, a ZMQ ``PAIR`` socket carrying CBOR-encoded messages
  between processes. The coordinator binds; the worker connects.
"""

import abc
import asyncio
import types
import typing
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional, TypeVar, Union

import cbor2
import structlog
import zmq
import zmq.asyncio
import zmq.error

from .codec import decode, encode
from .exception import ChannelError

__all__ = [
    'Channel',
    'MemoryChannel',
    'SocketChannel',
    'get_logger',
]

ChannelType = TypeVar('ChannelType', bound='Channel')
SocketOptions = dict[int, Union[int, bytes]]


def get_logger(
    *factory_args: Any,
    **context: Any,
) -> structlog.typing.FilteringBoundLogger:
    """Get an unbound logger with async-compatible methods (``ainfo``, ...)."""
    logger = structlog.get_logger(*factory_args, **context)
    return typing.cast(structlog.typing.FilteringBoundLogger, logger)


@dataclass(eq=False)  # type: ignore[misc]
class Channel(abc.ABC):  # https://github.com/python/mypy/issues/5374
    """One end of a duplex message channel.

    A channel wraps an underlying transport that it can repeatedly open, close, and
    reopen. :class:`Channel` supports the async context manager protocol (reusable)
    for automatically managing the transport.

    State Diagram::

        start [-> closed]? -> open
            [[-> close -> open]? [-> send]? [-> recv]? [-> closed?]]*
        -> close -> end

    Reopening a channel discards any messages received but not yet consumed.

    Attributes:
        send_count: The number of messages sent since the transport was opened.
        recv_count: The number of messages received since the transport was opened.
    """

    recv_queue: asyncio.Queue[Any] = field(
        default_factory=asyncio.Queue,
        init=False,
        repr=False,
    )
    send_count: int = field(default=0, init=False, repr=False)
    recv_count: int = field(default=0, init=False, repr=False)

    async def __aenter__(self: ChannelType, /) -> ChannelType:
        if self.closed:
            self.recv_queue = asyncio.Queue()
            await self.open()
            self.send_count = self.recv_count = 0
        return self

    async def __aexit__(
        self,
        _exc_type: Optional[type[BaseException]],
        _exc: Optional[BaseException],
        _traceback: Optional[types.TracebackType],
        /,
    ) -> None:
        if not self.closed:
            self.close()

    @abc.abstractmethod
    async def send(self, message: Any, /) -> None:
        """Send a message to the peer.

        Parameters:
            message: A CBOR-serializable structured value.

        Raises:
            ChannelError: If the transport cannot send the message.
            cbor2.CBOREncodeError: If the message is not serializable.
        """

    async def recv(self, /) -> Any:
        """Receive the next message from the peer.

        Raises:
            ChannelError: If the channel is closed.
        """
        if self.closed:
            raise ChannelError('channel is closed')
        message = await self.recv_queue.get()
        self.recv_count += 1
        return message

    @abc.abstractmethod
    async def open(self, /) -> None:
        """Open the internal transport."""

    @abc.abstractmethod
    def close(self, /) -> None:
        """Close the internal transport."""

    @property
    @abc.abstractmethod
    def closed(self, /) -> bool:
        """Whether the internal transport is closed."""


@dataclass(eq=False)
class MemoryChannel(Channel):
    """One end of an in-process channel. Create linked ends with :meth:`pair`.

    Parameters:
        peer: The other end.
    """

    peer: Optional['MemoryChannel'] = field(default=None, repr=False)
    is_open: bool = field(default=False, init=False, repr=False)

    @classmethod
    def pair(cls, /) -> tuple['MemoryChannel', 'MemoryChannel']:
        """Make two linked channel ends."""
        first, second = cls(), cls()
        first.peer, second.peer = second, first
        return first, second

    async def send(self, message: Any, /) -> None:
        if self.closed:
            raise ChannelError('channel is closed')
        if not self.peer or self.peer.closed:
            raise ChannelError('peer is not connected')
        self.peer.recv_queue.put_nowait(cbor2.loads(encode(message)))
        self.send_count += 1

    async def open(self, /) -> None:
        self.is_open = True

    def close(self, /) -> None:
        self.is_open = False

    @property
    def closed(self, /) -> bool:
        return not self.is_open


@dataclass(eq=False)
class SocketChannel(Channel):
    """One end of an interprocess channel backed by a ZMQ ``PAIR`` socket.

    Sending blocks (asynchronously) until the peer has connected.

    Parameters:
        bindings: A set of addresses to bind to.
        connections: A set of addresses to connect to.
        options: A mapping of `ZMQ socket option symbols
            <http://api.zeromq.org/4-3:zmq-setsockopt>`_ to their values.
    """

    bindings: frozenset[str] = frozenset()
    connections: frozenset[str] = frozenset()
    options: SocketOptions = field(default_factory=dict)
    socket: zmq.asyncio.Socket = field(init=False, repr=False)
    recv_task: Optional[asyncio.Task[NoReturn]] = field(
        default=None,
        init=False,
        repr=False,
    )
    logger: structlog.typing.FilteringBoundLogger = field(
        default_factory=get_logger,
        repr=False,
    )

    def __post_init__(self, /) -> None:
        self.bindings = frozenset(self.bindings)
        self.connections = frozenset(self.connections)
        if not self.bindings and not self.connections:
            raise ValueError('must provide at least one binding or connection')
        self.options.setdefault(zmq.LINGER, 0)

    async def send(self, message: Any, /) -> None:
        if self.closed:
            raise ChannelError('channel is closed')
        payload = encode(message)
        try:
            await self.socket.send(payload)
        except zmq.error.ZMQError as exc:
            raise ChannelError('failed to send message', errno=exc.errno) from exc
        self.send_count += 1

    async def _recv_forever(self, /) -> NoReturn:
        """Receive payloads indefinitely, decode them, and enqueue the messages."""
        logger = self.logger.bind()
        while True:
            try:
                payload = await self.socket.recv()
                await self.recv_queue.put(await decode(payload))
            except zmq.error.Again:
                continue
            except cbor2.CBORDecodeError as exc:
                await logger.aerror(
                    'Channel received a malformed payload',
                    exc_info=exc,
                )

    async def open(self, /) -> None:
        ctx = zmq.asyncio.Context.instance()
        self.socket = ctx.socket(zmq.PAIR)
        for name, value in self.options.items():
            self.socket.set(name, value)
        for address in self.bindings:
            self.socket.bind(address)
        for address in self.connections:
            self.socket.connect(address)
        self.recv_task = asyncio.create_task(self._recv_forever(), name='channel-recv')

    def close(self, /) -> None:
        if self.recv_task:
            self.recv_task.cancel()
        self.socket.close()

    @property
    def closed(self, /) -> bool:
        return bool(self.socket.closed) if getattr(self, 'socket', None) else True

