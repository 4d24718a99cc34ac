"""
IPC MODULE
==========

Filesystem mailbox shared between the scheduler and running units.
"""

from .mailbox import (
    CLOSE_SENTINEL,
    INTERRUPT_SENTINEL,
    Mailbox,
    MailboxPoller,
    PollResult,
)
from .models import (
    AckRecord,
    Channel,
    InputBatch,
    MailboxRecordError,
    ReplyRecord,
    ResultRecord,
    ResultStatus,
    StatusRecord,
    parse_record,
)

__all__ = [
    "CLOSE_SENTINEL",
    "INTERRUPT_SENTINEL",
    "Mailbox",
    "MailboxPoller",
    "PollResult",
    "AckRecord",
    "Channel",
    "InputBatch",
    "MailboxRecordError",
    "ReplyRecord",
    "ResultRecord",
    "ResultStatus",
    "StatusRecord",
    "parse_record",
]
