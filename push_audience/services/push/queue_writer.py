from typing import List, Optional

from push_audience.config.settings import settings
from push_audience.schemas.push_schemas import DeliveryRecord
from push_audience.services.push.store import QueueRepository


class QueueWriter:
    """
    Buffers delivery records of one app and writes them to the queue in
    batches of `batch_size`.

    `push` tells the caller when the buffer is full; the caller then awaits
    `flush`. A failed flush keeps the batch buffered and re-raises.
    """

    def __init__(
        self,
        queue: QueueRepository,
        app_id: str,
        batch_size: Optional[int] = None,
    ):
        self.queue = queue
        self.app_id = app_id
        self.batch_size = batch_size or settings.QUEUE_INSERT_BATCH
        self.buffer: List[DeliveryRecord] = []
        self.total = 0

    @property
    def length(self) -> int:
        return len(self.buffer)

    def push(self, record: DeliveryRecord) -> bool:
        """Buffer a record, True when the batch is full and must be flushed"""
        self.buffer.append(record)
        self.total += 1
        return len(self.buffer) >= self.batch_size

    async def flush(self) -> int:
        """Write buffered records, returns the number written"""
        if not self.buffer:
            return 0
        batch = self.buffer
        await self.queue.insert_many(self.app_id, batch)
        self.buffer = []
        return len(batch)
