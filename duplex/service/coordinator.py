"""Coordinator entry point.

The coordinator owns the console. It binds the channel, registers the functions of the
``--coordinator-module``, and spawns the worker process, which connects back.
"""

import asyncio
import contextlib
from collections.abc import Mapping
from typing import Any, Optional, Union

from .. import process
from ..codec import CallConfig, Value
from ..exception import ChannelError
from . import worker

__all__ = ['call', 'main', 'spawn_worker']


def spawn_worker(app: process.Application) -> asyncio.Task[Optional[int]]:
    """Start the worker process in a task. Cancelling the task stops the worker."""
    worker_process = process.AsyncProcess(
        target=worker.target,
        kwargs=dict(app.options),
        name='worker',
    )
    return asyncio.create_task(
        process.run_process(
            worker_process,
            terminate_timeout=app.options['terminate_timeout'],
        ),
        name='run-worker',
    )


async def _cancel_all(tasks: set[asyncio.Task[Any]]) -> None:
    for task in tasks:
        task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await asyncio.gather(*tasks, return_exceptions=True)


async def main(**options: Any) -> None:
    """Run the coordinator until it is interrupted or the worker exits."""
    async with process.Application('coordinator', options) as app:
        await app.make_coordinator()
        await app.logger.ainfo('Coordinator started')
        tasks = {app.report_health(), spawn_worker(app)}
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await _cancel_all(tasks)


async def call(
    method: str,
    /,
    args: Value = None,
    cfg: Union[CallConfig, Mapping[str, Any], None] = None,
    **options: Any,
) -> Any:
    """Start both contexts, call one worker function, and shut down.

    Returns:
        The function's result.

    Raises:
        RemoteCallError: If the worker reported an error.
        ChannelError: If the worker exited before responding.
    """
    async with process.Application('coordinator', options) as app:
        endpoint = await app.make_coordinator()
        worker_task = spawn_worker(app)
        call_task = asyncio.create_task(endpoint.invoke(method, args, cfg), name='call')
        try:
            tasks = {worker_task, call_task}
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            if not call_task.done():
                raise ChannelError(
                    'worker exited before responding',
                    method=method,
                    exit_code=worker_task.result(),
                )
            return call_task.result()
        finally:
            await _cancel_all({worker_task, call_task})
