"""
Pydantic models for mailbox records.

These models define the file contracts between the scheduler and a running
execution unit.

input/     host → unit, one JSON document per file (``InputBatch``)
messages/  unit → host, JSON Lines of ``ReplyRecord``
tasks/     unit → host, JSON Lines of ``AckRecord`` | ``StatusRecord`` | ``ResultRecord``
"""

from enum import Enum
from typing import Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, Field, ValidationError


class MailboxRecordError(ValueError):
    """A line in messages/ or tasks/ could not be parsed into a record."""


# ============ ENUMS ============

class Channel(str, Enum):
    """Outbound mailbox directories polled by the host."""
    MESSAGES = "messages"
    TASKS = "tasks"


class ResultStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


# ============ INPUT ============

class InputMessage(BaseModel):
    """One conversation message handed to the unit."""
    id: str
    sender: str = ""
    sender_name: str = ""
    content: str
    timestamp: str


class InputBatch(BaseModel):
    """Contents of one input/ file."""
    type: Literal["messages"] = "messages"
    chat_jid: str
    messages: List[InputMessage] = Field(default_factory=list)
    written_at: str


# ============ OUTPUT ============

class ReplyRecord(BaseModel):
    """Incremental reply chunk from the unit."""
    type: Literal["message"] = "message"
    text: str
    id: Optional[str] = None


class AckRecord(BaseModel):
    """The unit consumed an input file."""
    type: Literal["ack"] = "ack"
    file: str = Field(..., description="Name of the consumed input/ file")
    message_ids: List[str] = Field(default_factory=list)


class StatusRecord(BaseModel):
    """Progress note; only counts as activity."""
    type: Literal["status"] = "status"
    text: Optional[str] = None


class ResultRecord(BaseModel):
    """Final outcome of the current turn."""
    type: Literal["result"] = "result"
    status: ResultStatus
    result: Optional[str] = None
    error: Optional[str] = None


Record = Union[ReplyRecord, AckRecord, StatusRecord, ResultRecord]

_CHANNEL_RECORDS: Dict[Channel, Dict[str, Type[BaseModel]]] = {
    Channel.MESSAGES: {"message": ReplyRecord},
    Channel.TASKS: {"ack": AckRecord, "status": StatusRecord, "result": ResultRecord},
}


def parse_record(channel: Channel, data: object) -> Record:
    """Validate one decoded JSON line against the records allowed on ``channel``."""
    if not isinstance(data, dict):
        raise MailboxRecordError(f"record must be an object, got {type(data).__name__}")
    record_type = data.get("type")
    model = _CHANNEL_RECORDS[channel].get(record_type)
    if model is None:
        raise MailboxRecordError(f"unknown record type {record_type!r} on {channel.value}/")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MailboxRecordError(f"invalid {record_type} record: {e.error_count()} error(s)") from e
