"""Coordinator functions for tests."""


def greet(_context, name):
    return f'hello, {name}'


def setup(endpoint):
    endpoint.register_ex('greet', greet)
