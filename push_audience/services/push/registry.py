from typing import Optional

from .providers import DrillProvider, GeoProvider
from push_audience.utils.logging import get_logger

logger = get_logger()


class CapabilityRegistry:
    """Optional geo / drill capabilities installed in this process"""

    _geo: Optional[GeoProvider] = None
    _drill: Optional[DrillProvider] = None

    @classmethod
    def register_geo(cls, provider: Optional[GeoProvider]):
        cls._geo = provider
        logger.info(f"Registered geo provider: {type(provider).__name__}")

    @classmethod
    def register_drill(cls, provider: Optional[DrillProvider]):
        cls._drill = provider
        logger.info(f"Registered drill provider: {type(provider).__name__}")

    @classmethod
    def geo(cls) -> Optional[GeoProvider]:
        return cls._geo

    @classmethod
    def drill(cls) -> Optional[DrillProvider]:
        return cls._drill
