import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from dateutil.parser import isoparse
from sqlalchemy.ext.asyncio import AsyncSession

from push_audience.celery import celery
from push_audience.db.session import get_async_session
from push_audience.services.push.audience import AudienceEngine
from push_audience.services.push.registry import CapabilityRegistry
from push_audience.services.push.store import MessageRepository
from push_audience.utils.context import bound_request_id
from push_audience.utils.errors import ConfigurationError, DatabaseError
from push_audience.utils.logging import get_logger

Operation = Callable[[AudienceEngine], Awaitable[int]]


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def schedule_message_task(
    self, request_id: str, message_id: str, start: Optional[str] = None
):
    """
    Queue records for all users matching a message filter.

    Invoked by the trigger scheduler when a plain or API trigger fires.

    Args:
        request_id: Request ID for tracking purposes
        message_id: message to schedule
        start: optional ISO date overriding the trigger start
    """
    start_dt = isoparse(start) if start else None
    return asyncio.run(
        _run_message_operation(
            self,
            request_id,
            message_id,
            "schedule",
            lambda engine: engine.schedule(start=start_dt),
            retryable=False,
        )
    )


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def clear_message_task(self, request_id: str, message_id: str):
    """Remove all queued records of a message, counting them as cancelled"""
    return asyncio.run(
        _run_message_operation(
            self, request_id, message_id, "clear", lambda engine: engine.clear()
        )
    )


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def terminate_message_task(
    self, request_id: str, message_id: str, reason: str = "Terminated"
):
    """Remove all queued records of a message and mark it Done|Error"""
    return asyncio.run(
        _run_message_operation(
            self,
            request_id,
            message_id,
            "terminate",
            lambda engine: engine.terminate(reason),
        )
    )


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def stop_message_task(self, request_id: str, message_id: str):
    """Move queued records of a message to the holding area"""
    return asyncio.run(
        _run_message_operation(
            self, request_id, message_id, "stop", lambda engine: engine.stop()
        )
    )


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def resend_message_task(self, request_id: str, message_id: str):
    """Requeue records held by a previous stop"""
    return asyncio.run(
        _run_message_operation(
            self, request_id, message_id, "resend", lambda engine: engine.resend()
        )
    )


async def _load_engine(db_session: AsyncSession, message_id: str) -> AudienceEngine:
    message = await MessageRepository(db_session).get(message_id)
    if message is None:
        raise ConfigurationError(f"Message {message_id} not found")
    return AudienceEngine(
        db_session,
        message,
        geo=CapabilityRegistry.geo(),
        drill=CapabilityRegistry.drill(),
    )


async def _run_message_operation(
    task,
    request_id: str,
    message_id: str,
    operation_name: str,
    operation: Operation,
    retryable: bool = True,
) -> Dict[str, Any]:
    """
    Run one engine operation for a message inside its own session.

    Operations writing the queue in committed batches (`schedule`) pass
    `retryable=False`; their failures go back to the trigger scheduler
    without a rerun here.
    """
    logger = get_logger().bind(request_id=request_id)
    db_session: Optional[AsyncSession] = None
    engine: Optional[AudienceEngine] = None

    with bound_request_id(request_id):
        try:
            async for db_session in get_async_session():
                break

            if not db_session:
                raise DatabaseError("Failed to get database session")

            engine = await _load_engine(db_session, message_id)
            count = await operation(engine)

            logger.info(f"Message {message_id} {operation_name} completed: {count}")
            return {
                "success": True,
                "message_id": message_id,
                "operation": operation_name,
                "count": count,
                "request_id": request_id,
            }

        except ConfigurationError as e:
            # not retryable, fail the message if it exists
            logger.error(f"Message {message_id} {operation_name} failed: {e.message}")
            if engine is not None and operation_name != "terminate":
                await engine.terminate(e.message)
            return {
                "success": False,
                "error": e.serialize(),
                "message_id": message_id,
                "operation": operation_name,
                "request_id": request_id,
            }

        except Exception as e:
            logger.error(
                f"Message {message_id} {operation_name} task exception: {str(e)}"
            )

            if db_session:
                await db_session.rollback()

            # Retry with exponential backoff for transient errors
            if retryable and task.request.retries < task.max_retries:
                retry_delay = min(2**task.request.retries * 60, 600)
                raise task.retry(countdown=retry_delay)

            return {
                "success": False,
                "error": str(e),
                "message_id": message_id,
                "operation": operation_name,
                "request_id": request_id,
            }
        finally:
            if db_session:
                await db_session.close()
