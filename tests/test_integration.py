import pytest

from duplex import rpc
from duplex.exception import ChannelError
from duplex.service import coordinator


@pytest.fixture
def options(tmp_path):
    return {
        'debug': False,
        'thread_pool_workers': 2,
        'log_format': 'json',
        'log_level': 'info',
        'health_check_interval': 60,
        'terminate_timeout': 2,
        'channel_address': [f'ipc://{tmp_path}/duplex.sock'],
        'channel_option': [],
        'coordinator_module': 'testcode.host',
        'worker_module': 'testcode.arith',
    }


@pytest.mark.slow
@pytest.mark.asyncio
async def test_call_worker(options):
    assert await coordinator.call('add', {'a': 2, 'b': 3}, **options) == 5


@pytest.mark.slow
@pytest.mark.asyncio
async def test_call_worker_positional(options):
    assert await coordinator.call('multiply', [6, 7], **options) == 42


@pytest.mark.slow
@pytest.mark.asyncio
async def test_nested_call_across_processes(options):
    assert await coordinator.call('ask_coordinator', 'ada', **options) == 'hello, ada!'


@pytest.mark.slow
@pytest.mark.asyncio
async def test_call_worker_error(options):
    with pytest.raises(rpc.RemoteCallError) as excinfo:
        await coordinator.call('boom', None, **options)
    assert str(excinfo.value) == 'boom'
    with pytest.raises(rpc.RemoteCallError) as excinfo:
        await coordinator.call('nonexistent', None, **options)
    assert str(excinfo.value) == 'no such method exists'


@pytest.mark.slow
@pytest.mark.asyncio
async def test_worker_fails_to_start(options):
    options['worker_module'] = 'testcode.nonexistent'
    with pytest.raises(ChannelError) as excinfo:
        await coordinator.call('add', {'a': 2, 'b': 3}, **options)
    assert str(excinfo.value) == 'worker exited before responding'
    assert excinfo.value.context['exit_code'] != 0
