from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type

from push_audience.schemas.push_schemas import (
    AnchoredTrigger,
    AppInfo,
    DatedTrigger,
    DeliveryRecord,
    Message,
    Trigger,
    TriggerKind,
)
from push_audience.services.push.pipeline import MISSING, get_path
from push_audience.services.push.platforms import TK, targets
from push_audience.utils.datetime_utils import (
    DAY_MS,
    MINUTE_MS,
    local_day_utc_midnight_ms,
    now_ms,
    to_ms,
    utc_offset_minutes,
)
from push_audience.utils.ids import time_ordered_id


class DateMapper(ABC):
    """
    Turns a matched user document into a delivery record for one
    (platform, field) pair of a message.

    Subclasses only decide the delivery timestamp; returning None from
    `date` means the user is not eligible for this send.
    """

    def __init__(
        self,
        app: AppInfo,
        message: Message,
        trigger: Trigger,
        platform: str,
        field: str,
        clock: Callable[[], int] = now_ms,
    ):
        # app timezone offset in minutes, used when the user has no tz
        self.offset = utc_offset_minutes(app.timezone)
        self.message = message
        self.trigger = trigger
        self.platform = platform
        self.field = field
        self.pf = platform + field
        self.user_fields = message.user_fields
        self.clock = clock

    def user_offset_ms(self, user: Dict[str, Any]) -> int:
        tz = user.get("tz")
        minutes = (self.offset or 0) if tz is None else (tz or 0)
        return minutes * MINUTE_MS

    def token(self, user: Dict[str, Any]) -> Optional[str]:
        tokens = user.get(TK) or {}
        return tokens.get(self.pf) if isinstance(tokens, dict) else None

    def props(self, user: Dict[str, Any]) -> Dict[str, Any]:
        props = {}
        for path in self.user_fields:
            value = get_path(user, path)
            if value is not MISSING:
                props[path] = value
        return props

    @abstractmethod
    def date(self, user: Dict[str, Any], reference: int) -> Optional[int]:
        """Delivery timestamp in ms for a reference timestamp, None to skip"""

    def map(
        self,
        user: Dict[str, Any],
        date: datetime,
        contents: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[DeliveryRecord]:
        """
        Map user document to a delivery record

        Args:
            user: projected user document
            date: reference date (send date, cohort entry date, event date)
            contents: content overrides

        Returns:
            record ready to be queued or None when nothing should be sent
        """
        token = self.token(user)
        if not token:
            return None

        timestamp = self.date(user, to_ms(date))
        if timestamp is None:
            return None

        return DeliveryRecord(
            id=time_ordered_id(timestamp),
            message_id=self.message.id,
            platform=self.platform,
            field=self.field,
            user_id=str(user["uid"]),
            token=token,
            props=self.props(user),
            content_override=contents or None,
        )


class ImmediateMapper(DateMapper):
    """Plain and API triggers: a fixed date, optionally aligned to a timezone"""

    trigger: DatedTrigger

    def date(self, user: Dict[str, Any], reference: int) -> Optional[int]:
        if self.trigger.tz:
            return (
                reference
                - self.trigger.sctz * MINUTE_MS
                - self.user_offset_ms(user)
            )
        return reference


class AnchoredMapper(DateMapper):
    """Cohort and event triggers: dates relative to a per-user reference date"""

    trigger: AnchoredTrigger

    def date(self, user: Dict[str, Any], reference: int) -> Optional[int]:
        timestamp = reference

        # send at a given time of day in user's timezone
        if self.trigger.time is not None:
            in_tz = (
                local_day_utc_midnight_ms(reference)
                + self.trigger.time
                - self.user_offset_ms(user)
            )
            if in_tz < self.clock():
                if not self.trigger.reschedule:
                    return None
                timestamp = in_tz + DAY_MS
            else:
                timestamp = in_tz

        if self.trigger.delay:
            timestamp += self.trigger.delay

        if self.trigger.end and to_ms(self.trigger.end) < timestamp:
            return None

        return timestamp


def mapper_class(kind: str) -> Type[DateMapper]:
    if kind in (TriggerKind.API, TriggerKind.PLAIN):
        return ImmediateMapper
    if kind in (TriggerKind.COHORT, TriggerKind.EVENT):
        return AnchoredMapper
    raise ValueError(f"Unknown trigger kind: {kind}")


def build_mappers(
    app: AppInfo,
    message: Message,
    trigger: Trigger,
    clock: Callable[[], int] = now_ms,
) -> List[DateMapper]:
    """One mapper per (platform, field) the message targets"""
    cls = mapper_class(trigger.kind)
    return [
        cls(app, message, trigger, platform, field, clock=clock)
        for platform, field in targets(message)
    ]
