"""Worker entry point.

The worker connects to the coordinator's channel, registers the functions of the
``--worker-module``, and serves calls until it is terminated or its parent exits. The
worker does not own a console, so every log event it emits is forwarded to the
coordinator.
"""

import asyncio
import contextlib
import multiprocessing
from typing import Any

import uvloop

from .. import process

__all__ = ['main', 'target']


async def wait_for_parent() -> None:
    """Wait for the parent process to exit. Waits forever if there is no parent."""
    parent = multiprocessing.parent_process()
    if not parent:
        await asyncio.get_running_loop().create_future()
        return
    exited = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_reader(parent.sentinel, exited.set)
    try:
        await exited.wait()
    finally:
        loop.remove_reader(parent.sentinel)


async def main(**options: Any) -> None:
    """Async entry point."""
    async with process.Application('worker', options) as app:
        await app.make_worker()
        await app.logger.ainfo('Worker started')
        tasks = {
            app.report_health(),
            asyncio.create_task(wait_for_parent(), name='wait-for-parent'),
        }
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            await app.logger.awarning('Parent process exited')
        finally:
            for task in tasks:
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(*tasks)


def target(**options: Any) -> None:
    """The process entry point."""
    uvloop.run(main(**options))
