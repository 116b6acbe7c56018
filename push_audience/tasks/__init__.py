from .audience_tasks import (
    schedule_message_task,
    clear_message_task,
    terminate_message_task,
    stop_message_task,
    resend_message_task,
)

__all__ = [
    "schedule_message_task",
    "clear_message_task",
    "terminate_message_task",
    "stop_message_task",
    "resend_message_task",
]
