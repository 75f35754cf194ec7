"""Bidirectional remote procedure calls between a coordinator and a worker."""

__version__ = '0.1.0'
