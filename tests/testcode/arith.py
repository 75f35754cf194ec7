"""Worker functions for tests. Exposed to the coordinator by ``setup``."""

from duplex import rpc


def add(args, _context):
    return args['a'] + args['b']


def boom(_args, _context):
    raise ValueError('boom')


async def ask_coordinator(name, context):
    greeting = await context.endpoint.invoke('greet', [name])
    return f'{greeting}!'


def inspect_context(_args, context):
    return {'call_id': context.call_id, 'cfg': context.config.to_wire()}


class Calculator(rpc.Handler):
    @rpc.route
    def multiply(self, _context, a, b):
        return a * b

    @rpc.route('sum-all')
    async def sum_all(self, _context, *values):
        return sum(values)


def setup(endpoint):
    endpoint.register('add', add)
    endpoint.register('boom', boom)
    endpoint.register('ask_coordinator', ask_coordinator)
    endpoint.register('inspect_context', inspect_context)
    endpoint.register_handler(Calculator())
