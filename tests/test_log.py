import asyncio
import io

import orjson as json
import pytest
import structlog
import structlog.testing

from duplex import log
from duplex.channel import MemoryChannel
from duplex.exception import ChannelError, DuplexBaseException


def test_exc_render():
    exc = ChannelError('disconnected', errno=32, address='ipc:///tmp/duplex.sock')
    exc_dup = eval(repr(exc))
    assert exc.context == exc_dup.context
    assert str(exc_dup) == 'disconnected'
    assert isinstance(exc_dup, DuplexBaseException)


def test_json_format():
    stream = io.BytesIO()
    log.configure(fmt='json', level='info', stream=stream)
    logger = log.get_logger()
    logger.debug('hidden')
    logger.info('shown', x=1)
    logger.error('failed', exc_info=ChannelError('send failed', errno=32))
    first, second = map(json.loads, stream.getvalue().splitlines())
    assert first['event'] == 'shown'
    assert first['level'] == 'info'
    assert first['x'] == 1
    assert 'timestamp' in first
    assert second['errno'] == 32
    assert 'send failed' in second['exception']


def test_pretty_format():
    stream = io.StringIO()
    log.configure(fmt='pretty', level='warning', stream=stream)
    logger = log.get_logger()
    logger.info('hidden')
    logger.warning('shown', x=1)
    output = stream.getvalue()
    assert 'hidden' not in output
    assert 'shown' in output


def test_forwarder_inactive():
    forwarder = log.LogForwarder(MemoryChannel())
    event = {'event': 'local'}
    assert forwarder(None, 'info', event) is event


@pytest.mark.asyncio
async def test_forwarder():
    local, remote = MemoryChannel.pair()
    async with local, remote, log.LogForwarder(local) as forwarder:
        with pytest.raises(structlog.DropEvent):
            forwarder(None, 'info', {'event': 'hello', 'level': 'info', 'obj': object(), 1: 2})
        message = await asyncio.wait_for(remote.recv(), 1)
    assert message['type'] == 'log'
    assert message['data']['event'] == 'hello'
    assert isinstance(message['data']['obj'], str)
    assert message['data']['1'] == 2
    assert forwarder(None, 'info', {'event': 'local'}) == {'event': 'local'}


@pytest.mark.asyncio
async def test_forwarder_from_thread():
    local, remote = MemoryChannel.pair()
    stream = io.BytesIO()
    async with local, remote, log.LogForwarder(local) as forwarder:
        log.configure(forwarder, fmt='json', level='info', stream=stream)
        await asyncio.to_thread(log.get_logger().info, 'from thread', x=1)
        await log.get_logger().awarning('from loop')
        messages = [await asyncio.wait_for(remote.recv(), 1) for _ in range(2)]
    events = {message['data']['event']: message['data'] for message in messages}
    assert events['from thread']['x'] == 1
    assert events['from thread']['level'] == 'info'
    assert events['from loop']['level'] == 'warning'
    assert stream.getvalue() == b''


@pytest.mark.asyncio
async def test_forwarder_peer_gone():
    local, remote = MemoryChannel.pair()
    async with local, log.LogForwarder(local) as forwarder:
        with pytest.raises(structlog.DropEvent):
            forwarder(None, 'info', {'event': 'lost'})
        await asyncio.sleep(0.02)
        async with remote:
            with pytest.raises(structlog.DropEvent):
                forwarder(None, 'info', {'event': 'delivered'})
            message = await asyncio.wait_for(remote.recv(), 1)
    assert message['data'] == {'event': 'delivered'}


@pytest.mark.asyncio
async def test_emit_forwarded():
    log.configure(fmt='json', level='debug', stream=io.BytesIO())
    with structlog.testing.capture_logs() as logs:
        logger = log.get_logger().bind(context='worker')
        data = {'event': 'hello', 'level': 'error', 'timestamp': 'then', 'x': 1}
        await log.emit_forwarded(logger, data)
    assert logs == [{'event': 'hello', 'log_level': 'error', 'x': 1, 'context': 'worker'}]
    logger = log.get_logger()
    with structlog.testing.capture_logs() as logs:
        await log.emit_forwarded(logger, {'event': 'odd', 'level': 'trace'})
        await log.emit_forwarded(logger, ['not', 'a', 'mapping'])
    assert logs[0] == {'event': 'odd', 'log_level': 'warning', 'forwarded_level': 'trace'}
    assert logs[1]['log_level'] == 'info'
    assert logs[1]['event'] == "['not', 'a', 'mapping']"


def test_level_num():
    assert log.get_level_num('warning') == 30
    assert log.get_level_num('CRITICAL') == 50
