"""Logging configuration.

This module largely wraps the :mod:`structlog` framework to provide structured
logging for both execution contexts. A chain of "processors" (callables) filters or
transforms events produced by log statements.

Only the coordinator owns a console. A worker installs a :class:`LogForwarder` into
its processor chain, which ships every event across the channel as a ``log`` message.
The coordinator's endpoint re-emits these events with :func:`emit_forwarded`.

Note:
    Coroutines should use the async logging methods (``await logger.ainfo(...)``),
    which render events in the default executor. Synchronous code, like function
    registration at startup, uses the plain methods.

    :mod:`structlog` also has a notion of *bound* and *unbound* loggers. An *unbound*
    logger is a proxy that borrows its configuration from the global configuration set
    by :func:`duplex.log.configure`. Once a logger is bound by calling
    :meth:`structlog.BoundLoggerBase.bind`, the global configuration is copied into the
    logger's local state and frozen.
"""

import asyncio
import contextlib
import functools
import logging
import sys
import types
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Literal, MutableMapping, NoReturn, Optional, Union

import orjson as json
import structlog
import structlog.contextvars
import structlog.processors
import structlog.typing

from . import channel
from .channel import Channel
from .codec import LogRecord
from .exception import ChannelError, DuplexBaseException

__all__ = [
    'AsyncLogger',
    'LEVELS',
    'LogForwarder',
    'configure',
    'emit_forwarded',
    'get_level_num',
    'get_logger',
]


AsyncLogger = structlog.typing.FilteringBoundLogger
Event = MutableMapping[str, Any]
ProcessorReturnType = Union[Event, str, bytes]
Processor = Callable[[Any, str, Event], ProcessorReturnType]
LEVELS: list[str] = ['debug', 'info', 'warning', 'error', 'critical']
"""Log severity levels, in ascending order of severity.

============ ================================= =========================================
Level        Description                       Example
============ ================================= =========================================
``debug``    Frequent, low-level tracing.      An endpoint receives a message.
``info``     Normal operation (default level). A function is registered.
``warning``  Unusual or anomalous events.      A forwarded event has an unknown level.
``error``    Failure mode.                     A response matches no pending call.
``critical`` Cannot continue running.          The worker process dies.
============ ================================= =========================================
"""


get_logger = channel.get_logger
"""Get an unbound logger.

Parameters:
    factory_args: Positional arguments passed to the logger factory.
    context: Contextual variables added to every event produced by this logger.
"""


@functools.lru_cache(maxsize=16)
def get_level_num(level_name: str, /, *, default: int = logging.DEBUG) -> int:
    """Translate a :mod:`logging` level name into its numeric value.

    Parameters:
        level_name: A case-insensitive name, such as ``'DEBUG'``.
        default: The numeric level to return if the name is invalid.

    Example:
        >>> get_level_num('INFO')
        20
        >>> assert get_level_num('DNE') == logging.DEBUG == 10
    """
    level = getattr(logging, level_name.upper(), None)
    return level if isinstance(level, int) else default


def _add_exc_context(_logger: Any, _method: str, event: Event, /) -> Event:
    """A processor to add the context of a :class:`DuplexBaseException` to the event.

    When the keys of the exception context clash with those of the event, the event's
    entries take priority.
    """
    exception = event.get('exc_info')
    if isinstance(exception, DuplexBaseException):
        event = exception.context | event
    return event


@dataclass
class LogForwarder:
    """Forwards log events to the peer that owns the console.

    A :class:`LogForwarder` instance is a threadsafe :mod:`structlog` processor
    (callable). While the forwarder is active (its async context has been entered),
    the processor copies each event into an internal queue and drops it locally. A
    worker task drains the queue and sends each event as a ``log`` message. Outside
    the async context, events pass through and render locally.

    Event values that are not JSON-serializable are replaced by their string forms.

    Parameters:
        channel: The channel shared with the console-owning peer.
        send_queue_capacity: The maximum size of the event queue. When the queue is
            full, any additional events are dropped.
    """

    channel: Channel
    send_queue_capacity: int = 512
    send_queue: Optional[asyncio.Queue[Event]] = field(
        default=None,
        init=False,
        repr=False,
    )
    loop: Optional[asyncio.AbstractEventLoop] = field(
        default=None,
        init=False,
        repr=False,
    )
    stack: contextlib.AsyncExitStack = field(
        default_factory=contextlib.AsyncExitStack,
        init=False,
        repr=False,
    )

    def __call__(self, _logger: Any, _method: str, event: Event, /) -> Event:
        if not self.loop or not self.send_queue:
            return event
        # Later processors could mutate the event dictionary, so a copy is enqueued.
        data = json.loads(
            json.dumps(dict(event), default=str, option=json.OPT_NON_STR_KEYS),
        )
        self.loop.call_soon_threadsafe(self._enqueue, data)
        raise structlog.DropEvent

    def _enqueue(self, data: Event, /) -> None:
        if self.send_queue:
            with contextlib.suppress(asyncio.QueueFull):
                self.send_queue.put_nowait(data)

    async def __aenter__(self, /) -> 'LogForwarder':
        await self.stack.__aenter__()
        self.send_queue = asyncio.Queue(self.send_queue_capacity)
        worker = asyncio.create_task(self._send_forever(), name='log-forward')
        self.stack.callback(worker.cancel)
        self.loop = asyncio.get_running_loop()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[types.TracebackType],
        /,
    ) -> Optional[bool]:
        self.loop = self.send_queue = None
        return await self.stack.__aexit__(exc_type, exc, traceback)

    async def _send_forever(self, /) -> NoReturn:
        if not self.send_queue:  # pragma: no cover; always initialized by `__aenter__`
            raise ValueError('queue is not initialized')
        queue = self.send_queue
        while True:
            data = await queue.get()
            with contextlib.suppress(ChannelError):
                await self.channel.send(LogRecord(data).to_wire())


async def emit_forwarded(logger: AsyncLogger, data: Any, /) -> None:
    """Re-emit an event produced by a peer's :class:`LogForwarder`.

    The event is logged at its original level. The peer's timestamp is replaced by
    the local one.
    """
    event = dict(data) if isinstance(data, dict) else {'event': repr(data)}
    level = event.pop('level', 'info')
    message = event.pop('event', '(no message)')
    event.pop('timestamp', None)
    if level not in LEVELS:
        event['forwarded_level'] = level
        level = 'warning'
    method = getattr(logger, f'a{level}')
    await method(str(message), **{str(key): value for key, value in event.items()})


def configure(
    forwarder: Optional[LogForwarder] = None,
    /,
    *,
    fmt: Literal['json', 'pretty'] = 'json',
    level: str = 'INFO',
    stream: Optional[IO[Any]] = None,
) -> None:
    """Configure :mod:`structlog` with the desired log format and filtering.

    Parameters:
        forwarder: A forwarder added into the processor chain just before rendering.
        fmt: The format of events written to the stream.
        level: The minimum log level (inclusive) that should be processed. Severities
            are compared using :func:`duplex.log.get_level_num`.
        stream: Where rendered events are written. Defaults to standard error, since
            standard output is reserved for command results.

    For development, we recommend the ``'pretty'`` log format, which is human-readable
    and renders exception tracebacks but cannot be parsed:

    .. code-block:: text

        2026-10-19T21:01:22.301992Z [info     ] Registered function      method=add

    In production, we recommend the ``'json'`` format, which produces events in
    `jsonlines <https://jsonlines.org/>`_ format (required entries shown):

    .. code-block:: json

        {"event":"Registered function","level":"info","timestamp":"2026-10-19T21:04:15.507057Z"}
    """
    logging.captureWarnings(True)
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _add_exc_context,
        structlog.processors.TimeStamper(fmt='iso'),
    ]
    logger_factory: Callable[..., Union[structlog.PrintLogger, structlog.BytesLogger]]
    if forwarder:
        processors.append(structlog.processors.format_exc_info)
        processors.append(forwarder)
    if fmt == 'pretty':
        processors.append(structlog.dev.ConsoleRenderer(pad_event=40))
        logger_factory = structlog.PrintLoggerFactory(stream or sys.stderr)
    else:
        if not forwarder:
            processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer(serializer=json.dumps))
        logger_factory = structlog.BytesLoggerFactory(
            getattr(stream or sys.stderr, 'buffer', stream or sys.stderr),
        )

    structlog.configure(
        cache_logger_on_first_use=False,
        wrapper_class=structlog.make_filtering_bound_logger(get_level_num(level)),
        processors=processors,
        logger_factory=logger_factory,
    )
