"""Command-line interface and configuration.

Every option can also be set with an environment variable (``DUPLEX_<OPTION>``) or an
entry in the YAML file passed to ``--config``. Explicit options take priority over the
environment, which takes priority over the file.
"""

import functools
from typing import Any, Callable, Optional, TypeVar, Union

import click
import orjson as json
import uvloop
import yaml
import zmq

import duplex

from . import log
from .exception import DuplexBaseException
from .service import coordinator, worker

__all__ = ['cli']

FC = TypeVar('FC', Callable[..., Any], click.Command)
ParameterCallback = Callable[[click.Context, click.Parameter, Any], Any]
SocketOption = tuple[int, Union[int, bytes]]


class GroupedOption(click.Option):
    """An option listed under its group's section of the help text."""

    def __init__(self, *args: Any, group: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.group = group


def grouped_option(group: str, /) -> Callable[..., Callable[[FC], FC]]:
    """Make an option decorator whose options belong to ``group``."""
    return functools.partial(click.option, cls=GroupedOption, group=group)


class OptionGroupCommand(click.Command):
    """A command whose help text has one section per option group.

    Ungrouped options are listed last, under "Other Options".
    """

    def format_options(
        self,
        ctx: click.Context,
        formatter: click.HelpFormatter,
    ) -> None:
        sections: dict[str, list[tuple[str, str]]] = {}
        for param in self.get_params(ctx):
            record = param.get_help_record(ctx)
            if record:
                group = getattr(param, 'group', None) or 'other'
                sections.setdefault(group, []).append(record)
        for group in sorted(sections, key=lambda group: group == 'other'):
            with formatter.section(f'{group.title()} Options'):
                formatter.write_dl(sections[group], col_max=30)


class OptionGroupMultiCommand(OptionGroupCommand, click.Group):
    def format_options(
        self,
        ctx: click.Context,
        formatter: click.HelpFormatter,
    ) -> None:
        super().format_options(ctx, formatter)
        self.format_commands(ctx, formatter)


def make_converter(convert: Callable[[Any], Any], /) -> ParameterCallback:
    """Make a :mod:`click` callback that applies a conversion to an option's value.

    Options given multiple times have each of their values converted. A conversion
    that raises :class:`ValueError` is reported as a bad parameter.
    """

    def callback(_ctx: click.Context, _param: click.Parameter, value: Any, /) -> Any:
        try:
            if isinstance(value, tuple):
                return tuple(map(convert, value))
            return convert(value)
        except ValueError as exc:
            raise click.BadParameter(str(exc)) from exc

    return callback


def check_positive(value: float, /) -> float:
    """Reject durations and counts that are not strictly positive.

    Examples:
        >>> check_positive(0.5)
        0.5
        >>> check_positive(0)
        Traceback (most recent call last):
          ...
        ValueError: 0 is not a positive number
    """
    if value <= 0:
        raise ValueError(f'{value} is not a positive number')
    return value


def parse_socket_option(option: str, /) -> SocketOption:
    r"""Parse a ``--channel-option`` of the form ``NAME:VALUE``.

    ``NAME`` is a ZMQ socket option, in any case. ``VALUE`` is an integer, or else a
    hex-encoded bytestring. Quote a value to force it to be read as bytes.

    Examples:
        >>> parse_socket_option('sndhwm:1000') == (zmq.SNDHWM, 1000)
        True
        >>> parse_socket_option("ROUTING_ID:'1212'") == (zmq.ROUTING_ID, b'\x12\x12')
        True
        >>> parse_socket_option('SNDHWM')
        Traceback (most recent call last):
          ...
        ValueError: expected OPTION:VALUE, got 'SNDHWM'
        >>> parse_socket_option('NOT_AN_OPTION:1')
        Traceback (most recent call last):
          ...
        ValueError: unknown ZMQ socket option 'NOT_AN_OPTION'
    """
    name, separator, value = option.partition(':')
    if not separator:
        raise ValueError(f'expected OPTION:VALUE, got {option!r}')
    symbol = getattr(zmq, name.upper(), None)
    if not isinstance(symbol, int):
        raise ValueError(f'unknown ZMQ socket option {name!r}')
    try:
        return symbol, int(value)
    except ValueError:
        return symbol, bytes.fromhex(value.strip("'"))


def load_config(ctx: click.Context, _param: click.Parameter, value: Any) -> None:
    """Use the entries of a YAML config file as option defaults.

    Keys may be spelled with hyphens or underscores.
    """
    if not value:
        return
    try:
        with open(value) as stream:
            config = yaml.safe_load(stream)
    except yaml.YAMLError as exc:
        mark = getattr(exc, 'problem_mark', None)
        where = f': line {mark.line + 1}, column {mark.column + 1}' if mark else ''
        raise click.BadParameter(f'unable to parse YAML ({value}){where}') from exc
    if config is None:
        return
    if not isinstance(config, dict):
        raise click.BadParameter('config file must contain a mapping')
    defaults = {str(key).replace('-', '_'): entry for key, entry in config.items()}
    ctx.default_map = (ctx.default_map or {}) | defaults


channel_option = grouped_option('channel')
functions_option = grouped_option('functions')
log_option = grouped_option('log')
process_option = grouped_option('process')


@click.group(
    context_settings=dict(
        auto_envvar_prefix='DUPLEX',
        max_content_width=100,
        show_default=True,
    ),
    cls=OptionGroupMultiCommand,
)
@click.option(
    '--config',
    type=click.Path(dir_okay=False, exists=True),
    callback=load_config,
    is_eager=True,
    expose_value=False,
    help='YAML file of option defaults.',
)
@channel_option(
    '--channel-address',
    metavar='ADDRESS',
    multiple=True,
    default=['ipc:///tmp/duplex.sock'],
    help='Addresses the coordinator binds to (and the worker connects to).',
)
@channel_option(
    '--channel-option',
    callback=make_converter(parse_socket_option),
    metavar='OPTION:VALUE',
    multiple=True,
    default=[],
    help='ZMQ socket options for both ends of the channel.',
)
@functions_option(
    '--coordinator-module',
    metavar='MODULE',
    help='Module whose setup(endpoint) registers the coordinator functions.',
)
@functions_option(
    '--worker-module',
    metavar='MODULE',
    help='Module whose setup(endpoint) registers the worker functions.',
)
@log_option(
    '--log-level',
    type=click.Choice(log.LEVELS, case_sensitive=False),
    default='info',
    help='Minimum severity of log records displayed.',
)
@log_option(
    '--log-format',
    type=click.Choice(['json', 'pretty'], case_sensitive=False),
    default='json',
    help='Format of records printed to standard error.',
)
@process_option(
    '--thread-pool-workers',
    callback=make_converter(check_positive),
    type=int,
    default=1,
    help='Number of threads to spawn for executing blocking code.',
)
@process_option(
    '--health-check-interval',
    callback=make_converter(check_positive),
    type=float,
    default=60,
    help='Seconds between health checks.',
)
@process_option(
    '--terminate-timeout',
    callback=make_converter(check_positive),
    type=float,
    default=2,
    help='Seconds to wait for the worker to terminate before killing it.',
)
@click.option('--debug/--no-debug', help='Enable the event loop debugger.')
@click.version_option(version=duplex.__version__, message='%(version)s')
@click.pass_context
def cli(ctx: click.Context, **options: Any) -> None:
    """Bidirectional remote procedure calls between a coordinator and a worker.

    The coordinator and the worker share a single duplex channel. Each side registers
    functions the other can call, and either side may call the other at any time.
    """
    ctx.obj = options


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the coordinator and spawn the worker.

    Both contexts run until interrupted.
    """
    uvloop.run(coordinator.main(**ctx.obj))


@cli.command(name='call')
@click.option(
    '--arguments',
    callback=make_converter(json.loads),
    default='null',
    help='Arguments (in JSON format) passed to the function as-is. Absent if omitted.',
)
@click.option(
    '--cfg',
    callback=make_converter(json.loads),
    default='{}',
    help='Per-call configuration (a JSON object).',
)
@click.argument('method')
@click.pass_context
def call_cli(ctx: click.Context, method: str, arguments: Any, cfg: Any) -> None:
    """Call a worker function once and print its result.

    The result is printed to standard output in JSON format. If the call fails, the
    worker's error is printed to standard error:

    \b
        $ python -m duplex --worker-module arith call add --arguments '{"a":2,"b":3}'
        5
    """
    try:
        result = uvloop.run(
            coordinator.call(method, arguments, cfg, **ctx.obj),
        )
    except DuplexBaseException as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(result, default=str))


@cli.command(name='worker')
@click.pass_context
def worker_cli(ctx: click.Context) -> None:
    """Run a worker that connects to a running coordinator."""
    uvloop.run(worker.main(**ctx.obj))
