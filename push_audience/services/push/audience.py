from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from push_audience.schemas.push_schemas import (
    CANCELLED,
    AppInfo,
    Message,
    State,
    Trigger,
)
from push_audience.services.push.filter_compiler import FilterCompiler
from push_audience.services.push.mappers import build_mappers
from push_audience.services.push.providers import DrillProvider, GeoProvider
from push_audience.services.push.queue_writer import QueueWriter
from push_audience.services.push.store import (
    AppRepository,
    GeoRegionRepository,
    HistoryRepository,
    MessageRepository,
    QueueRepository,
    UserRepository,
)
from push_audience.utils.datetime_utils import now_ms
from push_audience.utils.errors import ConfigurationError, PushError
from push_audience.utils.logging import get_logger


class AudienceEngine:
    """
    User selection, queueing and unqueueing of one message.

    Scheduling compiles the message filter, streams matching users, maps each
    of them through one date mapper per (platform, field) and writes the
    resulting records in batches. Nothing here retries: errors propagate to
    the caller.

    Scheduling and clearing the same message are not mutually exclusive; a
    clear running during a schedule leaves records written after it.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        message: Message,
        app: Optional[AppInfo] = None,
        geo: Optional[GeoProvider] = None,
        drill: Optional[DrillProvider] = None,
        batch_size: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.db = db_session
        self.message = message
        self.app = app
        self.geo = geo
        self.drill = drill
        self.batch_size = batch_size
        self.clock = clock

        self.apps = AppRepository(db_session)
        self.users = UserRepository(db_session)
        self.queue = QueueRepository(db_session)
        self.messages = MessageRepository(db_session)
        self.history = HistoryRepository(db_session)
        self.geo_regions = GeoRegionRepository(db_session)

        self.logger = get_logger().bind(message_id=message.id)

    async def get_app(self) -> AppInfo:
        """Lazy load app from db"""
        if self.app is None:
            self.app = await self.apps.get(self.message.app)
            if self.app is None:
                raise ConfigurationError(f"App {self.message.app} not found")
        return self.app

    async def steps(self, project: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        app = await self.get_app()
        compiler = FilterCompiler(
            self.message,
            app,
            self.history,
            self.geo_regions,
            geo=self.geo,
            drill=self.drill,
            clock=self.clock,
        )
        return await compiler.steps(project)

    async def schedule(
        self,
        trigger: Optional[Trigger] = None,
        start: Optional[datetime] = None,
        contents: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        """
        Queue records for every user matching the message filter

        Args:
            trigger: effective trigger, the message plain/API trigger by default
            start: send date override, trigger start by default
            contents: content overrides

        Returns:
            number of records queued
        """
        trigger = trigger or self.message.trigger_plain()
        if trigger is None:
            raise ConfigurationError(
                f"Message {self.message.id} has no trigger to schedule"
            )
        start = start or trigger.start

        self.logger.info(f"scheduling {self.message.id} date {start.isoformat()}")
        return await self._queue(trigger, start, contents)

    async def push(
        self,
        trigger: Trigger,
        uids: Sequence[str],
        date: datetime,
        contents: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        """Queue records for given users only (cohort entry, event occurrence)"""
        if not uids:
            return 0
        self.logger.info(f"pushing {len(uids)} uids into {self.message.id}")
        return await self._queue(trigger, date, contents, uids)

    async def _queue(
        self,
        trigger: Trigger,
        date: datetime,
        contents: Optional[List[Dict[str, Any]]],
        uids: Optional[Sequence[str]] = None,
    ) -> int:
        app = await self.get_app()
        mappers = build_mappers(app, self.message, trigger, clock=self.clock)
        steps = await self.steps()
        if uids is not None:
            steps.insert(len(steps) - 1, {"$match": {"uid": {"$in": list(uids)}}})

        writer = QueueWriter(self.queue, app.id, self.batch_size)

        async for user in self.users.stream(app.id, steps):
            for mapper in mappers:
                record = mapper.map(user, date, contents)
                if record is None:
                    continue
                if writer.push(record):
                    self.logger.debug(
                        f"inserting batch of {writer.length}, {writer.total} records total"
                    )
                    await writer.flush()

        self.logger.debug(
            f"inserting final batch of {writer.length}, {writer.total} records total"
        )
        await writer.flush()

        self.logger.info(f"Queued {writer.total} records of message {self.message.id}")
        return writer.total

    async def pop(self, uids: Sequence[str]) -> int:
        """Remove queued records of given users, counted as cancelled"""
        if not uids:
            return 0
        self.logger.info(f"popping {len(uids)} uids from {self.message.id}")
        deleted = {}
        for platform in self.message.platforms:
            deleted[platform] = await self.queue.delete_users(
                self.message.id, platform, uids
            )
        return await self._count_cancelled(deleted)

    async def clear(self) -> int:
        """
        Remove all message records from the queue

        Returns:
            number of records removed
        """
        deleted = {}
        for platform in self.message.platforms:
            deleted[platform] = await self.queue.delete_many(self.message.id, platform)
        return await self._count_cancelled(deleted)

    async def _count_cancelled(self, deleted: Dict[str, int]) -> int:
        deleted = {p: count for p, count in deleted.items() if count}
        total = sum(deleted.values())
        if not total:
            return 0

        def mirror():
            self.message.result.processed += total
            for platform, count in deleted.items():
                self.message.result.response(platform, CANCELLED, count)

        await self.messages.increment(
            self.message.id,
            processed=total,
            errors={p: {CANCELLED: count} for p, count in deleted.items()},
            on_success=mirror,
        )
        self.logger.info(f"Cancelled {total} records of message {self.message.id}")
        return total

    async def terminate(self, msg: str = "Terminated") -> int:
        """
        Remove all message records and mark the message as failed

        Args:
            msg: error message stored in result.error

        Returns:
            number of records removed
        """
        deleted = await self.clear()
        state = State.DONE | State.ERROR
        error = PushError(msg).serialize()

        def mirror():
            self.message.state = state
            self.message.result.error = error

        await self.messages.set_state(
            self.message.id, state, error=error, on_success=mirror
        )
        self.logger.warning(f"Terminated message {self.message.id}: {msg}")
        return deleted

    async def stop(self) -> int:
        """Move message records out of the queue so that the leftover can be resent"""
        moved = await self.queue.hold(self.message.id)
        self.logger.info(f"Stopped message {self.message.id}, {moved} records held")
        return moved

    async def resend(self) -> int:
        """Requeue records held by `stop`, with their original ids and dates"""
        moved = await self.queue.release(self.message.id)
        self.logger.info(f"Resending message {self.message.id}, {moved} records requeued")
        return moved
