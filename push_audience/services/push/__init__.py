from .audience import AudienceEngine
from .filter_compiler import FilterCompiler
from .mappers import AnchoredMapper, DateMapper, ImmediateMapper, build_mappers
from .queue_writer import QueueWriter

__all__ = [
    "AudienceEngine",
    "FilterCompiler",
    "DateMapper",
    "ImmediateMapper",
    "AnchoredMapper",
    "build_mappers",
    "QueueWriter",
]
