"""Bidirectional remote procedure calls (RPC) over a single channel.

Two :class:`Endpoint` instances, one per execution context, share a
:class:`duplex.channel.Channel`. Each endpoint is both a client and a service: it can
register functions for its peer to call, and it can call the functions its peer
registered. Requests and responses travel over the same channel in both directions.

Every outbound call mints a random call ID (a UUID string) and parks a future in the
endpoint's :class:`PendingCalls` table. The peer echoes the ID in its response, which
is how the endpoint matches responses to calls. Responses may arrive in any order.

A single task per endpoint (the dispatch loop) reads inbound messages. Requests are
executed in tasks of their own, so the loop never waits on a function, and a function
may itself call back into its peer while its own request is still in flight.

Errors do not cross the channel as objects. When a function fails, only the string
form of the exception is returned, and the caller raises a :class:`RemoteCallError`
carrying that string.
"""

import asyncio
import contextlib
import functools
import inspect
import types
import typing
import uuid
from collections.abc import Awaitable, Callable, Iterator, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, Protocol, TypeVar, Union

import cbor2

from . import log
from .channel import Channel
from .codec import CallConfig, LogRecord, Request, Response, Value, parse_message
from .exception import ChannelError, DuplexBaseException

__all__ = [
    'BadArguments',
    'CallContext',
    'DuplicateRegistration',
    'Endpoint',
    'FunctionRegistry',
    'Handler',
    'HandlerFailure',
    'NoSuchMethod',
    'OrphanResponse',
    'PendingCalls',
    'RemoteCallError',
    'route',
    'spread_args',
]


class RemoteCallError(DuplexBaseException):
    """A call failed on the peer.

    ``str(exc)`` is exactly the error string the peer reported. The context holds the
    method name and call ID, which are known locally.
    """


class DuplicateRegistration(DuplexBaseException):
    """A function is already registered under this name."""


class NoSuchMethod(DuplexBaseException):
    """A request named a function that is not registered."""


class BadArguments(DuplexBaseException):
    """A positional function received arguments that are neither a list nor absent."""


class HandlerFailure(DuplexBaseException):
    """A registered function raised an exception.

    The message is the string form of the original exception, which is chained.
    """


class OrphanResponse(DuplexBaseException):
    """A response matched no pending call (already settled or never issued here)."""


EndpointType = TypeVar('EndpointType', bound='Endpoint')


@dataclass(frozen=True)
class CallContext:
    """Information about the request a function is executing.

    Parameters:
        endpoint: The endpoint executing the request. Functions may issue nested calls
            to the peer through it.
        call_id: The caller's call ID.
        config: The caller's per-call configuration.
    """

    endpoint: 'Endpoint' = field(repr=False)
    call_id: str
    config: CallConfig = field(default_factory=CallConfig)


Function = Callable[[Value, CallContext], Any]
"""A registered function: takes the raw arguments and a context, returns a value or an
awaitable, or raises."""


def spread_args(func: Callable[..., Any], /) -> Function:
    """Adapt a function of the form ``func(context, *args)`` to a :data:`Function`.

    The wrapper spreads a list (or tuple) of arguments as positional arguments and calls
    ``func`` with only the context when the arguments are ``None``.

    Raises:
        BadArguments: When called with any other kind of arguments (including strings
            and mappings).
    """

    @functools.wraps(func)
    def wrapper(args: Value, context: CallContext, /) -> Any:
        if args is None:
            return func(context)
        if isinstance(args, (list, tuple)):
            return func(context, *args)
        raise BadArguments(
            'arguments must be a list or absent',
            args_type=type(args).__name__,
        )

    return wrapper


@dataclass
class FunctionRegistry:
    """A mapping from method names to registered functions.

    Functions are registered once, at startup, and never removed.

    Parameters:
        functions: The registered functions.
        logger: A logger instance.
    """

    functions: dict[str, Function] = field(default_factory=dict)
    logger: log.AsyncLogger = field(default_factory=log.get_logger, repr=False)

    def __contains__(self, name: object, /) -> bool:
        return name in self.functions

    def __len__(self, /) -> int:
        return len(self.functions)

    def get(self, name: str, /) -> Optional[Function]:
        return self.functions.get(name)

    def register(self, name: str, func: Function, /) -> None:
        """Register a function under a name.

        Parameters:
            name: The method name the peer calls the function by. Must not be empty.
            func: A callable accepting ``(args, context)``. May be a coroutine
                function.

        Raises:
            ValueError: If the name is empty.
            DuplicateRegistration: If the name is taken. The first registration is kept.
        """
        if not name:
            raise ValueError('method name must not be empty')
        if name in self.functions:
            raise DuplicateRegistration('function already registered', method=name)
        self.functions[name] = func
        self.logger.info('Registered function', method=name)


ResponseType = TypeVar('ResponseType')


@dataclass
class PendingCalls(Generic[ResponseType]):
    """Track in-flight calls and their outcomes.

    Every call is associated with a unique call ID (a random UUID string). An entry
    lives until its response is registered or the caller stops waiting, whichever comes
    first.

    Parameters:
        futures: A mapping from call IDs to futures representing responses.
    """

    futures: MutableMapping[str, asyncio.Future[ResponseType]] = field(
        default_factory=dict,
    )

    def __contains__(self, call_id: object, /) -> bool:
        return call_id in self.futures

    def __len__(self, /) -> int:
        return len(self.futures)

    @staticmethod
    def generate_id() -> str:
        return str(uuid.uuid4())

    @contextlib.contextmanager
    def new_call(
        self,
        /,
        call_id: Optional[str] = None,
    ) -> Iterator[tuple[str, asyncio.Future[ResponseType]]]:
        """Register a new call.

        Parameters:
            call_id: A unique call identifier. If not provided, one is generated.

        Returns:
            The call ID and a future representing the response.

        Raises:
            ValueError: If the provided call ID is already in flight.
        """
        if call_id is None:
            call_id = self.generate_id()
        elif call_id in self.futures:
            raise ValueError('call ID already exists')
        self.futures[call_id] = asyncio.get_running_loop().create_future()
        try:
            yield call_id, self.futures[call_id]
        finally:
            self.futures.pop(call_id, None)

    def register_response(self, call_id: str, response: ResponseType, /) -> None:
        """Remove a call from the table, then settle its future.

        A call is settled at most once: the entry is gone before the future completes,
        so a repeated response raises :class:`KeyError`.

        Raises:
            KeyError: If no call with this ID is in flight.
        """
        future = self.futures.pop(call_id)
        if not future.done():
            future.set_result(response)


Call = Callable[..., Awaitable[Any]]


@dataclass
class CallFactory:
    """
    A wrapper class around the call factory.

    This wrapper uses currying to partially complete the argument list to
    :meth:`Endpoint.issue_call`.
    """

    issue_call: Call
    cached_partial: Callable[[str], Call] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        make_cached = functools.lru_cache(maxsize=128)
        self.cached_partial: Callable[[str], Call] = make_cached(self._partial)

    def _partial(self, method: str) -> Call:
        return functools.partial(self.issue_call, method)

    def __getitem__(self, method: str) -> Call:
        return self.cached_partial(method)

    def __getattr__(self, method: str) -> Call:
        return self.cached_partial(method)


Method = Callable[..., Any]


class RemoteMethod(Protocol):
    """A remotely callable method (any signature, any return value)."""

    __remote__: str

    def __call__(self, /, *args: Any, **kwargs: Any) -> Any:
        ...


@typing.overload
def route(method_or_name: str, /) -> Callable[[Method], RemoteMethod]:
    ...


@typing.overload
def route(method_or_name: Method, /) -> RemoteMethod:
    ...


def route(
    method_or_name: Union[str, Method],
    /,
) -> Union[RemoteMethod, Callable[[Method], RemoteMethod]]:
    """Decorator for marking a bound method as a remotely callable function.

    Parameters:
        method_or_name: Either the method to be registered or the name it should be
            registered under. If the former, the method name is exposed to the peer.
            The latter is useful for exposing a name that is not a valid Python
            identifier.

    Returns:
        Either an identity decorator (if a name was provided) or the method provided.
    """
    if isinstance(method_or_name, str):

        def decorator(method: Callable[..., Any]) -> RemoteMethod:
            remote_method = typing.cast(RemoteMethod, method)
            remote_method.__remote__ = typing.cast(str, method_or_name)
            return remote_method

        return decorator
    remote_method = typing.cast(RemoteMethod, method_or_name)
    remote_method.__remote__ = method_or_name.__name__
    return remote_method


class Handler:
    """An object whose bound methods are exposed to the peer.

    Define a handler by subclassing :class:`Handler` and applying the :func:`route`
    decorator. Each method receives the :class:`CallContext` followed by the caller's
    positional arguments:

    >>> class CustomHandler(Handler):
    ...     @route
    ...     async def method1(self, context: CallContext, arg: int) -> int:
    ...         ...
    ...     @route('non-python-identifier')
    ...     def method2(self, context: CallContext):
    ...         ...

    Register the methods with :meth:`Endpoint.register_handler`.
    """

    @functools.cached_property
    def method_table(self) -> dict[str, types.MethodType]:
        """A mapping of method names to (possibly coroutine) bound methods."""
        # Need to use the class to avoid calling `getattr(...)` on this property.
        # Accessing bound methods directly can lead to infinite recursion.
        funcs = inspect.getmembers(self.__class__, inspect.isfunction)
        funcs = [(attr, func) for attr, func in funcs if hasattr(func, '__remote__')]
        return {func.__remote__: getattr(self, attr) for attr, func in funcs}


@dataclass
class Endpoint:
    """One side of a channel: registers functions, executes requests, issues calls.

    Entering the endpoint's async context opens the channel and starts the dispatch
    loop. Exiting cancels the loop and any requests still executing, then closes the
    channel. Calls still pending at exit are never settled: a channel restart
    invalidates them.

    Parameters:
        channel: The channel shared with the peer.
        registry: Functions this endpoint exposes to the peer.
        pending: This endpoint's in-flight calls.
        owns_console: Whether log events forwarded by the peer should be re-emitted
            here. Endpoints that do not own the console ignore them.
        peer_name: Bound as ``context`` to re-emitted log events.
        logger: A logger instance.
    """

    channel: Channel
    registry: FunctionRegistry = field(default_factory=FunctionRegistry)
    pending: PendingCalls[Response] = field(default_factory=PendingCalls)
    owns_console: bool = True
    peer_name: str = 'peer'
    logger: log.AsyncLogger = field(default_factory=log.get_logger)
    tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False, repr=False)
    stack: contextlib.AsyncExitStack = field(
        default_factory=contextlib.AsyncExitStack,
        init=False,
        repr=False,
    )

    async def __aenter__(self: EndpointType, /) -> EndpointType:
        await self.stack.__aenter__()
        self.channel = await self.stack.enter_async_context(self.channel)
        dispatcher = asyncio.create_task(self._dispatch_forever(), name='dispatch')
        self.stack.callback(dispatcher.cancel)
        self.stack.callback(self._cancel_requests)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[types.TracebackType],
        /,
    ) -> Optional[bool]:
        return await self.stack.__aexit__(exc_type, exc, traceback)

    def _cancel_requests(self, /) -> None:
        for task in list(self.tasks):
            task.cancel()

    def register(self, name: str, func: Function, /) -> None:
        """Register a function of the form ``func(args, context)``.

        See :meth:`FunctionRegistry.register`.
        """
        self.registry.register(name, func)

    def register_ex(self, name: str, func: Callable[..., Any], /) -> None:
        """Register a function of the form ``func(context, *args)``.

        See :func:`spread_args` for how the caller's arguments are spread.
        """
        self.registry.register(name, spread_args(func))

    def register_handler(self, handler: Handler, /) -> None:
        """Register every routed method of a handler (see :meth:`register_ex`)."""
        for name, method in handler.method_table.items():
            self.register_ex(name, method)

    async def _dispatch_forever(self, /) -> None:
        """Receive messages until the channel closes and dispatch them."""
        while True:
            try:
                message = await self.channel.recv()
            except ChannelError as exc:
                await self.logger.aerror(
                    'Endpoint stopped receiving messages',
                    exc_info=exc,
                )
                return
            try:
                await self.dispatch(message)
            except (ValueError, DuplexBaseException) as exc:
                await self.logger.aerror(
                    'Endpoint failed to process message',
                    exc_info=exc,
                )

    async def dispatch(self, message: Any, /) -> None:
        """Process one inbound message.

        Requests are scheduled as separate tasks; this method does not wait for them.

        Raises:
            ValueError: If the message is malformed.
            OrphanResponse: If a response matches no pending call.
        """
        parsed = parse_message(message)
        if isinstance(parsed, Request):
            await self.logger.adebug(
                'Endpoint received request',
                method=parsed.method,
                call_id=parsed.call_id,
            )
            task = asyncio.create_task(
                self._handle_request(parsed),
                name=f'request-{parsed.call_id}',
            )
            self.tasks.add(task)
            task.add_done_callback(self.tasks.discard)
        elif isinstance(parsed, Response):
            try:
                self.pending.register_response(parsed.call_id, parsed)
            except KeyError as exc:
                raise OrphanResponse('missed response', call_id=parsed.call_id) from exc
        elif isinstance(parsed, LogRecord):
            if self.owns_console:
                logger = self.logger.bind(context=self.peer_name)
                await log.emit_forwarded(logger, parsed.data)
        else:
            await self.logger.adebug(
                'Endpoint ignored message',
                message_type=message.get('type'),
            )

    async def execute(self, request: Request, /) -> Any:
        """Execute a request with a registered function.

        Returns:
            The function's result. Awaitable results are awaited.

        Raises:
            NoSuchMethod: If no function is registered under the requested name.
            BadArguments: If a positional function received unusable arguments.
            HandlerFailure: If the function raised any other exception.
        """
        func = None
        if isinstance(request.method, str):
            func = self.registry.get(request.method)
        if not func:
            raise NoSuchMethod('no such method exists', method=request.method)
        context = CallContext(self, request.call_id, request.cfg)
        try:
            result = func(request.args, context)
            if inspect.isawaitable(result):
                result = await result
            return result
        except DuplexBaseException:
            raise
        except Exception as exc:
            raise HandlerFailure(str(exc), method=request.method) from exc

    async def _handle_request(self, request: Request, /) -> None:
        try:
            response = Response(request.call_id, await self.execute(request))
        except DuplexBaseException as exc:
            response = Response(request.call_id, error=str(exc))
            await self.logger.aerror(
                'Endpoint was unable to execute call',
                method=request.method,
                call_id=request.call_id,
                exc_info=exc,
            )
        try:
            await self._respond(response)
        except ChannelError as exc:
            await self.logger.aerror(
                'Endpoint could not send response',
                method=request.method,
                call_id=request.call_id,
                exc_info=exc,
            )

    async def _respond(self, response: Response, /) -> None:
        try:
            await self.channel.send(response.to_wire())
        except cbor2.CBOREncodeError as exc:
            await self.logger.aerror(
                'Function returned a result that could not be serialized',
                call_id=response.call_id,
                exc_info=exc,
            )
            failure = Response(response.call_id, error=str(exc))
            await self.channel.send(failure.to_wire())

    async def invoke(
        self,
        method: str,
        /,
        args: Value = None,
        cfg: Union[CallConfig, Mapping[str, Any], None] = None,
    ) -> Any:
        """Call a function registered on the peer and wait for its result.

        There is no timeout: if the peer never responds, this call never returns.
        Impose a deadline from outside (*e.g.*, with :func:`asyncio.wait_for`) if
        needed. Cancelling the call abandons it.

        Parameters:
            method: The name the function is registered under on the peer.
            args: The arguments, passed to the function as-is.
            cfg: Per-call configuration, either a :class:`CallConfig` or its wire form.

        Returns:
            The function's result.

        Raises:
            RemoteCallError: If the peer reported an error.
            ChannelError: If the request could not be sent.
            cbor2.CBOREncodeError: If the arguments are not serializable.
        """
        config = cfg if isinstance(cfg, CallConfig) else CallConfig.from_wire(cfg)
        with self.pending.new_call() as (call_id, future):
            await self.logger.adebug(
                'Issuing remote procedure call',
                method=method,
                call_id=call_id,
            )
            request = Request(call_id, method, args, config)
            await self.channel.send(request.to_wire())
            response = await future
        if response.error is not None:
            raise RemoteCallError(response.error, method=method, call_id=call_id)
        return response.result

    async def issue_call(
        self,
        method: str,
        /,
        *args: Any,
        cfg: Union[CallConfig, Mapping[str, Any], None] = None,
    ) -> Any:
        """Call a peer function with positional arguments (see :meth:`invoke`)."""
        return await self.invoke(method, list(args), cfg)

    @functools.cached_property
    def call(self, /) -> CallFactory:
        """Syntactic sugar for issuing remote procedure calls.

        Instead of::

            await endpoint.invoke('add', [1, 2])

        Replace with either of::

            await endpoint.call.add(1, 2)
            await endpoint.call['add'](1, 2)
        """
        return CallFactory(self.issue_call)
