"""Process and resource management for the two contexts.

The coordinator spawns the worker as an :class:`AsyncProcess` and supervises it with
:func:`run_process`. Each context runs inside an :class:`Application`, which prepares
the event loop and logging and builds the role's :class:`rpc.Endpoint`.
"""

import asyncio
import contextlib
import functools
import importlib
import multiprocessing.context
import signal
import threading
import types
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Mapping, NoReturn, Optional

import zmq.asyncio

from . import log, rpc
from .channel import SocketChannel

# isort: unique-list
__all__ = [
    'Application',
    'AsyncProcess',
    'get_connection',
    'load_setup',
    'run_process',
]

Setup = Callable[[rpc.Endpoint], None]


class AsyncProcess(multiprocessing.context.SpawnProcess):
    """A child process the event loop can await.

    The child is always spawned, since forking a process with a running event loop and
    open ZMQ sockets is unsafe. Its entry point and arguments must therefore be
    picklable. Children are daemonic unless ``daemon=False`` is passed, so they never
    outlive the context that spawned them.
    """

    def __init__(self, /, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault('daemon', True)
        super().__init__(*args, **kwargs)
        self._exited: Optional[asyncio.Future[None]] = None

    def start(self, /) -> None:
        super().start()
        # Spawning pickles this object, which must not hold a loop-bound future yet.
        loop = asyncio.get_running_loop()
        self._exited = loop.create_future()
        loop.add_reader(self.sentinel, self._on_sentinel)

    def _on_sentinel(self, /) -> None:
        asyncio.get_running_loop().remove_reader(self.sentinel)
        if self._exited and not self._exited.done():
            self._exited.set_result(None)

    async def wait(self, /) -> Optional[int]:
        """Wait for the child to exit and reap it.

        Returns:
            The exit code. A child killed by a signal has a negative code.

        Raises:
            ValueError: If the process was never started.
        """
        if self._exited is None:
            raise ValueError('must start process before waiting')
        await asyncio.shield(self._exited)
        # The sentinel is readable before the child is reaped, and ``exitcode`` is only
        # set once it is.
        await asyncio.to_thread(self.join)
        return self.exitcode

    @property
    def returncode(self, /) -> Optional[int]:
        return self.exitcode


async def _stop_process(
    process: AsyncProcess,
    timeout: float,
    logger: log.AsyncLogger,
    /,
) -> None:
    process.terminate()
    try:
        exit_code = await asyncio.wait_for(process.wait(), timeout)
    except asyncio.TimeoutError:
        process.kill()
        exit_code = await process.wait()
        await logger.aerror('Killed process', exit_code=exit_code)
    else:
        await logger.ainfo('Terminated process', exit_code=exit_code)


async def run_process(
    process: AsyncProcess,
    *,
    terminate_timeout: float = 2,
) -> Optional[int]:
    """Start a child process (unless already running) and wait for it to exit.

    Cancelling the task running this coroutine stops the child. The child is sent
    ``SIGTERM`` and, if still alive after ``terminate_timeout`` seconds, ``SIGKILL``.
    The cancellation is then propagated, so the caller never leaves an orphan behind.

    Returns:
        The exit code.
    """
    if not process.is_alive():
        process.start()
    logger = log.get_logger().bind(process=process.name, pid=process.pid)
    await logger.ainfo('Process started')
    try:
        exit_code = await process.wait()
    except asyncio.CancelledError:
        await _stop_process(process, terminate_timeout, logger)
        raise
    if exit_code == 0:
        await logger.ainfo('Process exited normally', exit_code=exit_code)
    else:
        await logger.acritical('Process exited abnormally', exit_code=exit_code)
    return exit_code


def get_connection(bindings: Collection[str], /) -> str:
    """Choose the address a worker connects to from the coordinator's bindings.

    Both contexts share a host, so ``ipc`` addresses are preferred. A ``tcp`` binding
    on every interface (``*``) is reached through the loopback address.

    Raises:
        ValueError: If no bindings are provided.

    Examples:
        >>> get_connection(['tcp://*:6100'])
        'tcp://127.0.0.1:6100'
        >>> get_connection(['tcp://*:6100', 'ipc:///tmp/duplex.sock'])
        'ipc:///tmp/duplex.sock'
        >>> get_connection([])
        Traceback (most recent call last):
          ...
        ValueError: must provide at least one address
    """
    if not bindings:
        raise ValueError('must provide at least one address')
    address = min(bindings, key=lambda address: not address.startswith('ipc://'))
    return address.replace('://*:', '://127.0.0.1:', 1)


def load_setup(module_name: Optional[str], /) -> Optional[Setup]:
    """Import a functions module and return its ``setup(endpoint)`` callable.

    Returns:
        The callable, or ``None`` if no module name was given.

    Raises:
        ImportError: If the module cannot be imported.
        AttributeError: If the module does not define ``setup``.
    """
    if not module_name:
        return None
    module = importlib.import_module(module_name)
    setup: Setup = getattr(module, 'setup')
    return setup


@dataclass
class Application:
    """The resources of one context (coordinator or worker), built from its options.

    Create one :class:`Application` per main function, like so::

        >>> async def main(**options):
        ...     async with Application('coordinator', options) as app:
        ...         endpoint = await app.make_coordinator()

    Entering the application prepares the running loop and configures logging. Every
    resource the application opens (including the endpoint) is pushed on ``stack`` and
    closed when the application exits.

    Parameters:
        name: The role, either ``coordinator`` or ``worker``. It selects which
            ``<name>_module`` option registers the role's functions.
        options: A map of option names to their values.
        stack: The stack that the app's resources are pushed on.
        logger: A logger instance (may not be bound).
    """

    name: str
    options: Mapping[str, Any]
    stack: contextlib.AsyncExitStack = field(default_factory=contextlib.AsyncExitStack)
    logger: log.AsyncLogger = field(default_factory=log.get_logger)

    async def __aenter__(self, /) -> 'Application':
        self.configure_loop()
        await self.stack.__aenter__()
        self.stack.push_async_callback(self._terminate_zmq_context)
        self.configure_logging()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[types.TracebackType],
        /,
    ) -> Optional[bool]:
        hide_exc = await self.stack.__aexit__(exc_type, exc, traceback)
        if exc_type and issubclass(exc_type, asyncio.CancelledError):
            await self.logger.ainfo('Application is exiting')
            return True
        return hide_exc

    async def _terminate_zmq_context(self, /) -> None:
        zmq.asyncio.Context.instance().term()
        await self.logger.adebug('ZMQ context terminated')

    def configure_logging(
        self,
        forwarder: Optional[log.LogForwarder] = None,
        /,
    ) -> None:
        """Configure logging from the options and rebind this app's logger."""
        log.configure(
            forwarder,
            fmt=self.options['log_format'],
            level=self.options['log_level'],
        )
        self.logger = log.get_logger().bind(app=self.name)

    @functools.cached_property
    def executor(self, /) -> ThreadPoolExecutor:
        """The loop's default executor, which decodes messages and reaps children."""
        # Closed by ``asyncio.AbstractEventLoop.shutdown_default_executor``
        return ThreadPoolExecutor(
            max_workers=self.options['thread_pool_workers'],
            thread_name_prefix=f'{self.name}-pool',
        )

    def _log_loop_error(
        self,
        _loop: asyncio.AbstractEventLoop,
        context: dict[str, Any],
        /,
    ) -> None:
        fields: dict[str, Any] = {}
        if 'exception' in context:
            fields['exc_info'] = context['exception']
        future = context.get('future')
        if future is not None:
            fields['done'] = future.done()
        if isinstance(future, asyncio.Task):
            fields['task_name'] = future.get_name()
        self.logger.error(context['message'], **fields)

    def configure_loop(self, /) -> None:
        """Prepare the running loop for this context.

        The loop gets the debug flag, the thread pool, and a handler that logs errors
        from callbacks and abandoned tasks. In the main thread, ``SIGINT`` and
        ``SIGTERM`` cancel the current task, which unwinds the application.
        """
        loop = asyncio.get_running_loop()
        loop.set_debug(self.options['debug'])
        loop.set_default_executor(self.executor)
        loop.set_exception_handler(self._log_loop_error)
        thread = threading.current_thread()
        thread.name = f'{self.name}-main'
        main_task = asyncio.current_task()
        if not main_task:
            return
        main_task.set_name(f'{self.name}-main')
        if thread is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            reason = f'{self.name} received {signal.Signals(signum).name}'
            loop.add_signal_handler(signum, main_task.cancel, reason)

    async def _health_cb(self, /) -> None:
        await self.logger.ainfo(
            'Health check',
            thread_count=threading.active_count(),
            task_count=len(asyncio.all_tasks()),
        )

    async def _report_health_forever(self, /) -> NoReturn:
        interval = self.options['health_check_interval']
        while True:
            await self._health_cb()
            await asyncio.sleep(interval)

    def report_health(self, /) -> asyncio.Task[NoReturn]:
        """Schedule a task to periodically log the health of this context."""
        return asyncio.create_task(self._report_health_forever(), name='report-health')

    def _make_endpoint(self, channel: SocketChannel, /, **kwargs: Any) -> rpc.Endpoint:
        """Construct an endpoint and register this role's functions on it.

        Functions are registered before the endpoint's dispatch loop starts, so no
        request can arrive before they exist.
        """
        logger = self.logger.bind(role=self.name)
        registry = rpc.FunctionRegistry(logger=logger)
        endpoint = rpc.Endpoint(channel, registry=registry, logger=logger, **kwargs)
        setup = load_setup(self.options.get(f'{self.name}_module'))
        if setup:
            setup(endpoint)
        return endpoint

    async def make_coordinator(self, /) -> rpc.Endpoint:
        """Make and start the coordinator's endpoint.

        The channel binds to every ``channel_address``. The coordinator owns the
        console, so it re-emits the log events its worker forwards.
        """
        channel = SocketChannel(
            bindings=frozenset(self.options['channel_address']),
            options=dict(self.options['channel_option']),
        )
        endpoint = self._make_endpoint(channel, owns_console=True, peer_name='worker')
        return await self.stack.enter_async_context(endpoint)

    async def make_worker(self, /) -> rpc.Endpoint:
        """Make and start the worker's endpoint.

        The channel connects to one of the coordinator's ``channel_address`` bindings.
        The worker does not own the console: once its endpoint is open, every log event
        is forwarded to the coordinator.
        """
        channel = SocketChannel(
            connections=frozenset({get_connection(self.options['channel_address'])}),
            options=dict(self.options['channel_option']),
        )
        forwarder = log.LogForwarder(channel)
        self.configure_logging(forwarder)
        endpoint = self._make_endpoint(channel, owns_console=False)
        endpoint = await self.stack.enter_async_context(endpoint)
        await self.stack.enter_async_context(forwarder)
        await self.logger.ainfo(
            'Log forwarder configured',
            fmt=self.options['log_format'],
            min_level=self.options['log_level'],
        )
        return endpoint
