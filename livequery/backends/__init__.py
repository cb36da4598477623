from .base import ChangeFeed, QueryInterface, fetch_descriptor
from .memory import MemoryBackend
from .shape import ShapeBackend

__all__ = [
    'ChangeFeed',
    'QueryInterface',
    'fetch_descriptor',
    'MemoryBackend',
    'ShapeBackend',
]
