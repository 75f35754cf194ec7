import cbor2
import pytest

from duplex.codec import (
    CallConfig,
    LogRecord,
    MessageType,
    Request,
    Response,
    decode,
    encode,
    parse_message,
)


def test_request_wire_shape():
    request = Request('id-1', 'add', {'a': 2, 'b': 3}, CallConfig(s='main', o=0.5))
    assert request.to_wire() == {
        'type': 'RPCRequest',
        'asyncID': 'id-1',
        'method': 'add',
        'args': {'a': 2, 'b': 3},
        'cfg': {'s': 'main', 'o': 0.5},
    }
    assert Request('id-2', 'ping').to_wire()['cfg'] == {}


def test_response_wire_shape():
    assert Response('id', 5).to_wire() == {'type': 'RPCResponse', 'asyncID': 'id', 'result': 5}
    assert Response('id', error='boom').to_wire() == {
        'type': 'RPCResponse',
        'asyncID': 'id',
        'error': 'boom',
    }
    message = Response('id', result=5, error='boom').to_wire()
    assert 'result' not in message
    assert Response('id').to_wire() == {'type': 'RPCResponse', 'asyncID': 'id', 'result': None}


def test_log_record_wire_shape():
    assert LogRecord({'event': 'x'}).to_wire() == {'type': 'log', 'data': {'event': 'x'}}


def test_parse_request():
    message = Request('id', 'f', [1], CallConfig(l=False, extra={'z': 'y'})).to_wire()
    assert parse_message(message) == Request('id', 'f', [1], CallConfig(l=False, extra={'z': 'y'}))
    request = parse_message({'type': 'RPCRequest', 'asyncID': 'id', 'method': 'f', 'cfg': 3})
    assert request.args is None
    assert request.cfg == CallConfig()


def test_parse_request_keeps_bad_method_name():
    assert parse_message({'type': 'RPCRequest', 'asyncID': 'id', 'method': 1}).method == 1
    assert parse_message({'type': 'RPCRequest', 'asyncID': 'id'}).method is None


def test_parse_response():
    assert parse_message({'type': 'RPCResponse', 'asyncID': 'id', 'result': [1]}) == Response(
        'id',
        [1],
    )
    assert parse_message({'type': 'RPCResponse', 'asyncID': 'id'}) == Response('id')
    assert parse_message({'type': 'RPCResponse', 'asyncID': 'id', 'error': {'a': 1}}).error is None


@pytest.mark.parametrize('message', [
    None,
    'RPCRequest',
    [MessageType.REQUEST.value],
    {'type': 'RPCRequest', 'method': 'f'},
    {'type': 'RPCResponse'},
    {'type': 'RPCResponse', 'asyncID': b'id'},
])
def test_parse_malformed(message):
    with pytest.raises(ValueError):
        parse_message(message)


def test_parse_unknown_type():
    assert parse_message({}) is None
    assert parse_message({'type': 'heartbeat', 'asyncID': 'id'}) is None
    assert parse_message({'type': 'log'}) == LogRecord(None)


def test_call_config_round_trip():
    cfg = CallConfig.from_wire({'s': 'a', 't': 'b', 'o': 1, 'l': True, 'extra-key': [1]})
    assert (cfg.s, cfg.t, cfg.o, cfg.l) == ('a', 'b', 1, True)
    assert cfg.extra == {'extra-key': [1]}
    assert CallConfig.from_wire(cfg.to_wire()) == cfg
    assert CallConfig.from_wire(['s']) == CallConfig()


@pytest.mark.asyncio
async def test_encode_decode():
    payload = encode({'type': 'log', 'data': (1, 2)})
    assert await decode(payload) == {'type': 'log', 'data': [1, 2]}
    with pytest.raises(cbor2.CBOREncodeError):
        encode(object())
    with pytest.raises(cbor2.CBORDecodeError):
        await decode(payload[:-1])
