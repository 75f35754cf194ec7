import asyncio
import multiprocessing
import signal

import pytest

from duplex import process
from testcode import host, targets

spawn = multiprocessing.get_context('spawn')


@pytest.fixture
def options(tmp_path):
    return {
        'debug': True,
        'thread_pool_workers': 3,
        'log_format': 'json',
        'log_level': 'debug',
        'health_check_interval': 60,
        'terminate_timeout': 2,
        'channel_address': [f'ipc://{tmp_path}/duplex.sock'],
        'channel_option': [],
        'coordinator_module': 'testcode.host',
        'worker_module': 'testcode.arith',
    }


@pytest.fixture
async def app(options):
    async with process.Application('coordinator', options) as app:
        yield app


@pytest.mark.asyncio
async def test_process_run():
    ready, done = spawn.Event(), spawn.Event()
    proc = process.AsyncProcess(target=targets.wait_for_done, args=(ready, done))
    task = asyncio.create_task(process.run_process(proc))
    assert await asyncio.to_thread(ready.wait, 10)
    assert proc.is_alive()
    done.set()
    assert await task == 0
    assert not proc.is_alive()


@pytest.mark.asyncio
@pytest.mark.parametrize('code', [0, 1, 3, 42])
async def test_process_exit_code(code):
    proc = process.AsyncProcess(target=targets.exit_with, args=(code,))
    assert await process.run_process(proc) == code
    assert proc.returncode == code


@pytest.mark.asyncio
async def test_process_wait_reaps_child():
    proc = process.AsyncProcess(target=targets.exit_with, args=(7,))
    proc.start()
    assert await asyncio.wait_for(proc.wait(), 10) == 7
    assert await proc.wait() == 7
    assert not proc.is_alive()


@pytest.mark.asyncio
async def test_process_wait_before_start():
    proc = process.AsyncProcess(target=targets.exit_with, args=(0,))
    with pytest.raises(ValueError):
        await proc.wait()


@pytest.mark.slow
@pytest.mark.asyncio
async def test_process_terminate():
    ready = spawn.Event()
    proc = process.AsyncProcess(target=targets.exit_on_terminate, args=(ready,))
    task = asyncio.create_task(process.run_process(proc))
    assert await asyncio.to_thread(ready.wait, 10)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert proc.returncode == 0xf


@pytest.mark.slow
@pytest.mark.asyncio
async def test_process_kill():
    ready = spawn.Event()
    proc = process.AsyncProcess(target=targets.ignore_terminate, args=(ready,))
    task = asyncio.create_task(process.run_process(proc, terminate_timeout=0.3))
    assert await asyncio.to_thread(ready.wait, 10)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert proc.returncode == -signal.SIGKILL


@pytest.mark.asyncio
async def test_loop_debug(app):
    assert asyncio.get_running_loop().get_debug()


@pytest.mark.asyncio
async def test_loop_exc_handler(mocker, app):
    logger = mocker.patch.object(app, 'logger')
    logger.adebug = mocker.AsyncMock()
    logger.ainfo = mocker.AsyncMock()
    loop = asyncio.get_running_loop()
    loop.call_exception_handler({'message': 'fail'})
    logger.error.assert_called_once_with('fail')
    logger.reset_mock()
    future = loop.create_future()
    exc = ValueError('bad')
    loop.call_exception_handler({'message': 'fail', 'future': future, 'exception': exc})
    logger.error.assert_called_once_with('fail', exc_info=exc, done=False)


@pytest.mark.asyncio
async def test_report_health(mocker, options):
    options['health_check_interval'] = 0.01
    async with process.Application('coordinator', options) as app:
        health_cb = mocker.patch.object(app, '_health_cb', new_callable=mocker.AsyncMock)
        task = app.report_health()
        await asyncio.sleep(0.1)
        task.cancel()
    assert health_cb.await_count >= 2


@pytest.mark.asyncio
async def test_make_coordinator(app):
    endpoint = await app.make_coordinator()
    assert 'greet' in endpoint.registry
    assert endpoint.owns_console
    assert endpoint.peer_name == 'worker'
    assert not endpoint.channel.closed


def test_load_setup():
    assert process.load_setup(None) is None
    assert process.load_setup('testcode.host') is host.setup
    with pytest.raises(ImportError):
        process.load_setup('testcode.nonexistent')
    with pytest.raises(AttributeError):
        process.load_setup('testcode.targets')


def test_get_connection():
    assert process.get_connection(['ipc:///tmp/a.sock']) == 'ipc:///tmp/a.sock'
    assert process.get_connection(['tcp://10.0.0.2:6100']) == 'tcp://10.0.0.2:6100'
    assert process.get_connection(['tcp://*:6100']) == 'tcp://127.0.0.1:6100'
