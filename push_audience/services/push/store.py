from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy import delete, distinct, exists, insert, or_, select, update, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from push_audience.config.settings import settings
from push_audience.db.models import (
    PUSH_COLUMNS,
    App,
    AppUser,
    GeoRegion,
    HeldPush,
    MessageErrorCount,
    PushHistory,
    PushMessage,
    QueuedPush,
)
from push_audience.schemas.push_schemas import (
    AppInfo,
    DeliveryRecord,
    Message,
    MessageResult,
)
from push_audience.services.push.pipeline import prepare_steps, run_steps
from push_audience.utils.logging import get_logger

logger = get_logger()

# error counters are created on first use, concurrently with other writers
_UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class AppRepository:
    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get(self, app_id: str) -> Optional[AppInfo]:
        app = await self.db.get(App, app_id)
        if app is None:
            return None
        return AppInfo(id=app.id, name=app.name, timezone=app.timezone)


class UserRepository:
    """Per-app user documents, queried with compiled audience steps"""

    def __init__(self, db_session: AsyncSession, chunk_size: Optional[int] = None):
        self.db = db_session
        self.chunk_size = chunk_size or settings.USER_STREAM_CHUNK

    async def stream(
        self, app_id: str, steps: List[Dict[str, Any]]
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Lazily yield user documents of an app passing all steps.

        Users are read in keyset-paginated chunks ordered by row id, so only one
        chunk is resident and writes may be issued on the same session between
        reads.
        """
        steps = prepare_steps(steps)
        last_id = 0
        while True:
            result = await self.db.execute(
                select(AppUser.id, AppUser.doc)
                .where(AppUser.app_id == app_id, AppUser.id > last_id)
                .order_by(AppUser.id)
                .limit(self.chunk_size)
            )
            rows = result.all()

            for row_id, doc in rows:
                last_id = row_id
                matched = run_steps(doc, steps)
                if matched is not None:
                    yield matched

            if len(rows) < self.chunk_size:
                return


class HistoryRepository:
    """Which users were already sent which messages"""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def filter_message(
        self, app_id: str, condition: Union[List[str], Dict[str, List[str]]]
    ) -> List[str]:
        """
        Resolve a message interaction condition into user ids.

        Args:
            app_id: app the users belong to
            condition: message ids list, {"$in": ids} or {"$nin": ids}

        Returns:
            uids with at least one history entry satisfying the condition; for
            the $nin form users without any history are included as well
        """
        if isinstance(condition, dict):
            included = condition.get("$in")
            excluded = condition.get("$nin")
        else:
            included, excluded = list(condition), None

        entry = [PushHistory.app_id == app_id]
        if included is not None:
            entry.append(PushHistory.message_id.in_(included))
        if excluded is not None:
            entry.append(PushHistory.message_id.not_in(excluded))

        if excluded is None:
            stmt = select(distinct(PushHistory.uid)).where(*entry)
        else:
            has_entry = exists().where(PushHistory.uid == AppUser.uid, *entry)
            has_history = exists().where(
                PushHistory.uid == AppUser.uid, PushHistory.app_id == app_id
            )
            stmt = select(AppUser.uid).where(
                AppUser.app_id == app_id, or_(has_entry, ~has_history)
            )

        result = await self.db.scalars(stmt)
        return list(result)


class GeoRegionRepository:
    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def find(self, ids: Sequence[str]) -> List[Dict[str, Any]]:
        result = await self.db.scalars(select(GeoRegion).where(GeoRegion.id.in_(ids)))
        return [
            {"_id": region.id, "app": region.app_id, "title": region.title, **region.geo}
            for region in result
        ]


class QueueRepository:
    """Queued delivery records and the holding area used by stop/resend"""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    @staticmethod
    def _row(app_id: str, record: DeliveryRecord) -> Dict[str, Any]:
        return {
            "id": record.id,
            "app_id": app_id,
            "message_id": record.message_id,
            "platform": record.platform,
            "field": record.field,
            "uid": record.user_id,
            "token": record.token,
            "props": record.props,
            "content": record.content_override,
        }

    @staticmethod
    def _record(row: QueuedPush) -> DeliveryRecord:
        return DeliveryRecord(
            id=row.id,
            message_id=row.message_id,
            platform=row.platform,
            field=row.field,
            user_id=row.uid,
            token=row.token,
            props=row.props or {},
            content_override=row.content,
        )

    async def insert_many(self, app_id: str, records: Sequence[DeliveryRecord]) -> None:
        if not records:
            return
        try:
            await self.db.execute(
                insert(QueuedPush), [self._row(app_id, r) for r in records]
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def delete_many(self, message_id: str, platform: str) -> int:
        return await self._delete(
            QueuedPush.message_id == message_id, QueuedPush.platform == platform
        )

    async def delete_users(
        self, message_id: str, platform: str, uids: Sequence[str]
    ) -> int:
        return await self._delete(
            QueuedPush.message_id == message_id,
            QueuedPush.platform == platform,
            QueuedPush.uid.in_(uids),
        )

    async def _delete(self, *criteria) -> int:
        try:
            result = await self.db.execute(
                delete(QueuedPush)
                .where(*criteria)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return result.rowcount or 0

    async def find(self, message_id: str) -> List[DeliveryRecord]:
        result = await self.db.scalars(
            select(QueuedPush)
            .where(QueuedPush.message_id == message_id)
            .order_by(QueuedPush.id)
        )
        return [self._record(row) for row in result]

    async def count(self, message_id: str, held: bool = False) -> int:
        model = HeldPush if held else QueuedPush
        count = await self.db.scalar(
            select(func.count()).select_from(model).where(model.message_id == message_id)
        )
        return count or 0

    async def hold(self, message_id: str) -> int:
        """Move message records from the queue to the holding area"""
        return await self._move(QueuedPush, HeldPush, message_id)

    async def release(self, message_id: str) -> int:
        """Move held message records back into the queue"""
        return await self._move(HeldPush, QueuedPush, message_id)

    async def _move(self, source, target, message_id: str) -> int:
        columns = [getattr(source, name) for name in PUSH_COLUMNS]
        try:
            await self.db.execute(
                insert(target).from_select(
                    list(PUSH_COLUMNS),
                    select(*columns).where(source.message_id == message_id),
                )
            )
            # only rows copied above, records queued meanwhile stay in place
            result = await self.db.execute(
                delete(source)
                .where(
                    source.message_id == message_id,
                    source.id.in_(
                        select(target.id).where(target.message_id == message_id)
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        moved = result.rowcount or 0
        logger.debug(
            f"Moved {moved} records of message {message_id} from {source.__tablename__} to {target.__tablename__}"
        )
        return moved


class MessageRepository:
    """Message documents; counters are only changed with atomic SQL increments"""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get(self, message_id: str) -> Optional[Message]:
        row = await self.db.scalar(
            select(PushMessage)
            .where(PushMessage.id == message_id)
            .options(selectinload(PushMessage.error_counts))
            .execution_options(populate_existing=True)
        )
        if row is None:
            return None

        result = MessageResult(processed=row.result_processed, error=row.result_error)
        for counter in row.error_counts:
            result.response(counter.platform, counter.kind, counter.count)

        return Message(
            id=row.id,
            app=row.app_id,
            platforms=row.platforms,
            filter=row.filter or {},
            fields=row.fields or {},
            user_fields=row.user_fields or [],
            contents=row.contents or [],
            triggers=row.triggers or [],
            state=row.state,
            result=result,
        )

    async def add(self, message: Message) -> None:
        data = message.model_dump(by_alias=True)
        self.db.add(
            PushMessage(
                id=message.id,
                app_id=message.app,
                platforms=list(message.platforms),
                filter=data["filter"],
                fields=data["fields"],
                user_fields=data["userFields"],
                contents=data["contents"],
                triggers=data["triggers"],
                state=int(message.state),
                result_processed=message.result.processed,
                result_error=message.result.error,
            )
        )
        await self.db.commit()

    async def increment(
        self,
        message_id: str,
        processed: int = 0,
        errors: Optional[Dict[str, Dict[str, int]]] = None,
        on_success: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        Atomically add to result.processed and result.errors.<platform>.<kind>.

        Args:
            message_id: message to update
            processed: increment of the processed counter
            errors: platform -> kind -> increment
            on_success: called after commit to mirror the change in memory
        """
        try:
            if processed:
                await self.db.execute(
                    update(PushMessage)
                    .where(PushMessage.id == message_id)
                    .values(result_processed=PushMessage.result_processed + processed)
                )
            for platform, kinds in (errors or {}).items():
                for kind, count in kinds.items():
                    await self._increment_counter(message_id, platform, kind, count)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if on_success:
            on_success()

    async def _increment_counter(
        self, message_id: str, platform: str, kind: str, count: int
    ) -> None:
        dialect = self.db.get_bind().dialect.name
        upsert = _UPSERT_INSERTS.get(dialect)
        if upsert is None:
            raise NotImplementedError(f"Counter upsert not supported on {dialect}")

        stmt = upsert(MessageErrorCount).values(
            message_id=message_id, platform=platform, kind=kind, count=count
        )
        await self.db.execute(
            stmt.on_conflict_do_update(
                index_elements=["message_id", "platform", "kind"],
                set_={"count": MessageErrorCount.count + stmt.excluded["count"]},
            )
        )

    async def set_state(
        self,
        message_id: str,
        state: int,
        error: Optional[Dict[str, Any]] = None,
        on_success: Optional[Callable[[], None]] = None,
    ) -> None:
        values: Dict[str, Any] = {"state": int(state)}
        if error is not None:
            values["result_error"] = error
        try:
            await self.db.execute(
                update(PushMessage).where(PushMessage.id == message_id).values(**values)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if on_success:
            on_success()
