from typing import Dict, List, Tuple

from push_audience.schemas.push_schemas import Message
from push_audience.utils.errors import ConfigurationError

# user document key holding tokens: {"tk": {"<platform><field>": "<token>"}}
TK = "tk"

PLATFORM: Dict[str, Dict[str, object]] = {
    "i": {"title": "iOS", "fields": {"prod": "p", "debug": "d", "adhoc": "a"}},
    "a": {"title": "Android", "fields": {"prod": "p"}},
    "h": {"title": "Huawei", "fields": {"prod": "p"}},
}


def platform_fields(message: Message, platform: str) -> List[str]:
    """Token field keys targeted for a platform of the message"""
    if message.fields.get(platform):
        return list(message.fields[platform])
    if platform in PLATFORM:
        return list(PLATFORM[platform]["fields"].values())  # type: ignore[union-attr]
    raise ConfigurationError(f"Unknown platform {platform} without token fields")


def targets(message: Message) -> List[Tuple[str, str]]:
    """Ordered (platform, field) pairs the message is sent through"""
    return [(p, f) for p in message.platforms for f in platform_fields(message, p)]


def token_path(platform: str, field: str) -> str:
    return f"{TK}.{platform}{field}"
