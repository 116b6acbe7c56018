import itertools
import os
import threading

_process_unique = os.urandom(5)
_counter = itertools.count(int.from_bytes(os.urandom(3), "big"))
_lock = threading.Lock()


def time_ordered_id(ms: int) -> str:
    """
    24 hex chars id: 4 bytes of epoch seconds taken from ``ms``, 5 bytes
    unique to this process and a 3 byte rolling counter.

    Ids sort by the embedded timestamp, so queue consumers can pick records
    due for delivery by id range.
    """
    seconds = max(0, int(ms // 1000)) & 0xFFFFFFFF
    with _lock:
        count = next(_counter) & 0xFFFFFF
    return (
        seconds.to_bytes(4, "big") + _process_unique + count.to_bytes(3, "big")
    ).hex()


def id_timestamp_ms(record_id: str) -> int:
    """Millisecond timestamp embedded into a time ordered id"""
    return int(record_id[:8], 16) * 1000
