# Shared utilities package
from .dynamo import RecordStore
from .email_templates import EmailTemplates, template_for_event
from .errors import PipelineError, StreamRecordError
from .events import EventEmitter, LifecycleEvent
from .licenses import LicenseSynchronizer
from .mailer import Mailer
from .stream_fields import get_field, parse_change_message

__all__ = [
    "RecordStore",
    "EmailTemplates",
    "template_for_event",
    "PipelineError",
    "StreamRecordError",
    "EventEmitter",
    "LifecycleEvent",
    "LicenseSynchronizer",
    "Mailer",
    "get_field",
    "parse_change_message",
]
