from datetime import datetime
from enum import Enum, IntFlag
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field

from push_audience.schemas.camel_base_model import CamelCaseBaseModel
from push_audience.utils.ids import id_timestamp_ms


class TriggerKind(str, Enum):
    API = "api"
    PLAIN = "plain"
    COHORT = "cohort"
    EVENT = "event"


class State(IntFlag):
    """Message lifecycle bit flags"""

    CREATED = 1
    STREAMABLE = 2
    STREAMING = 4
    PAUSED = 8
    DONE = 16
    ERROR = 32
    DELETED = 64


# result.errors.<platform>.<kind> counter names
CANCELLED = "cancelled"


class DatedTrigger(CamelCaseBaseModel):
    """Fields shared by triggers sending at a fixed date (Plain, API)"""

    start: datetime
    # send in a named timezone instead of the user's local time
    tz: bool = False
    # offset of that timezone in minutes
    sctz: int = 0


class PlainTrigger(DatedTrigger):
    kind: Literal["plain"] = "plain"


class ApiTrigger(DatedTrigger):
    kind: Literal["api"] = "api"


class AnchoredTrigger(CamelCaseBaseModel):
    """Fields shared by triggers anchored on a per-user date (Cohort, Event)"""

    start: datetime
    # ms since local midnight to send at, None to send right at reference date
    time: Optional[int] = None
    reschedule: bool = False
    # ms added to every computed date to spread the load
    delay: Optional[int] = None
    end: Optional[datetime] = None


class CohortTrigger(AnchoredTrigger):
    kind: Literal["cohort"] = "cohort"
    cohorts: List[str] = Field(default_factory=list)
    # True when sending on cohort entry, False on exit
    entry: bool = True
    cancels: bool = False


class EventTrigger(AnchoredTrigger):
    kind: Literal["event"] = "event"
    events: List[str] = Field(default_factory=list)


Trigger = Annotated[
    Union[PlainTrigger, ApiTrigger, CohortTrigger, EventTrigger],
    Field(discriminator="kind"),
]


class AudienceFilter(CamelCaseBaseModel):
    geos: List[str] = Field(default_factory=list)
    cohorts: List[str] = Field(default_factory=list)
    user: Optional[Dict[str, Any]] = None
    drill: Optional[Dict[str, Any]] = None


class MessageResult(CamelCaseBaseModel):
    processed: int = 0
    errors: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    def response(self, platform: str, kind: str, count: int) -> None:
        """Record `count` outcomes of `kind` for a platform"""
        platform_errors = self.errors.setdefault(platform, {})
        platform_errors[kind] = platform_errors.get(kind, 0) + count


class Message(CamelCaseBaseModel):
    id: str
    app: str
    platforms: List[str]
    filter: AudienceFilter = Field(default_factory=AudienceFilter)
    # platform key -> token field keys, registry defaults when missing
    fields: Dict[str, List[str]] = Field(default_factory=dict)
    user_fields: List[str] = Field(default_factory=list)
    contents: List[Dict[str, Any]] = Field(default_factory=list)
    triggers: List[Trigger] = Field(default_factory=list)
    state: int = State.CREATED
    result: MessageResult = Field(default_factory=MessageResult)

    def trigger_plain(self) -> Optional[Union[PlainTrigger, ApiTrigger]]:
        """First trigger sending at a fixed date, if any"""
        for trigger in self.triggers:
            if trigger.kind in (TriggerKind.PLAIN, TriggerKind.API):
                return trigger
        return None


class AppInfo(CamelCaseBaseModel):
    id: str
    name: str = ""
    timezone: Optional[str] = None


class DeliveryRecord(CamelCaseBaseModel):
    """One queued push: this message, via this platform/field, to this user"""

    id: str
    message_id: str
    platform: str
    field: str
    user_id: str
    token: str
    props: Dict[str, Any] = Field(default_factory=dict)
    content_override: Optional[List[Dict[str, Any]]] = None

    @property
    def timestamp_ms(self) -> int:
        return id_timestamp_ms(self.id)
