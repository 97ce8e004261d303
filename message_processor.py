"""
Turns raw inbox messages into speakable queue items.

Pipeline per message: eligibility → dedup → formatting → voice lookup → enqueue.
Everything except MessageProcessor.handle is a pure function.
"""

import hashlib
import json
import re
from collections import OrderedDict
from typing import Callable, Optional

from shared import (
    FINGERPRINT_CAPACITY,
    IDLE_NOTIFICATION_TYPE,
    MAX_SPOKEN_LENGTH,
    QueueItem,
    Voice,
    get_logger,
)

logger = get_logger("message-processor")

_CODE_BLOCK = re.compile(r"```[\s\S]*?```")
_INLINE_CODE = re.compile(r"`([^`]+)`")
_LINK = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_BOLD = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC = re.compile(r"\*([^*]+)\*")
_HEADING = re.compile(r"^#+\s+", re.MULTILINE)
_TABLE_ROW = re.compile(r"\|[^\n]+\|")
_LIST_ITEM = re.compile(r"^[-*]\s+", re.MULTILINE)
_BLANK_LINES = re.compile(r"\n{2,}")


def _parse_payload(text: str) -> Optional[dict]:
    """Return the JSON object embedded in a message text, if any."""
    if not text.startswith("{"):
        return None
    try:
        payload = json.loads(text)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def is_idle_notification(text: str) -> bool:
    payload = _parse_payload(text)
    return payload is not None and payload.get("type") == IDLE_NOTIFICATION_TYPE


def should_speak(message: dict) -> bool:
    """Skip empty texts and idle-notification control messages."""
    text = message.get("text")
    if not isinstance(text, str) or not text.strip():
        return False
    return not is_idle_notification(text)


def strip_markdown(text: str) -> str:
    """Remove Markdown decoration so the text reads naturally aloud."""
    text = _CODE_BLOCK.sub("", text)
    text = _INLINE_CODE.sub(r"\1", text)
    text = _LINK.sub(r"\1", text)
    text = _BOLD.sub(r"\1", text)
    text = _ITALIC.sub(r"\1", text)
    text = _HEADING.sub("", text)
    text = _TABLE_ROW.sub("", text)
    text = _LIST_ITEM.sub("", text)
    text = _BLANK_LINES.sub(". ", text)
    return text.strip()


def prepare_protocol_text(payload: dict, sender: str) -> str:
    """Render a structured protocol message as one sentence."""
    kind = payload["type"]
    if kind == "task_assignment":
        return f"{payload.get('assignedBy') or sender} assigned task: {payload.get('subject') or 'unknown'}"
    elif kind == "shutdown_request":
        return f"{sender} requests shutdown: {payload.get('reason') or 'work complete'}"
    elif kind == "shutdown_approved":
        return f"{sender} has shut down"
    elif kind == "plan_approval_request":
        return f"{sender} submitted a plan for approval"
    else:
        return f"{sender}: {str(kind).replace('_', ' ')}"


def prepare_text(message: dict) -> str:
    """Format one eligible message as the sentence to speak."""
    sender = message.get("from") or "unknown"
    text = message.get("text") or ""

    payload = _parse_payload(text)
    if payload is not None and payload.get("type"):
        return prepare_protocol_text(payload, sender)

    spoken = f"{sender} says: {strip_markdown(message.get('summary') or text)}"
    if len(spoken) > MAX_SPOKEN_LENGTH:
        spoken = spoken[:MAX_SPOKEN_LENGTH - 3] + "..."
    return spoken


def fingerprint(message: dict) -> str:
    """Identity of a message; broadcasts share it across inboxes."""
    raw = f"{message.get('from') or ''}{message.get('text') or ''}{message.get('timestamp') or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class FingerprintSet:
    """Bounded, insertion-ordered set of recently seen message fingerprints."""

    def __init__(self, capacity: int = FINGERPRINT_CAPACITY):
        self._capacity = capacity
        self._entries: OrderedDict[str, None] = OrderedDict()

    def seen(self, message: dict) -> bool:
        """Return True for a duplicate; otherwise remember the message."""
        key = fingerprint(message)
        if key in self._entries:
            return True
        self._entries[key] = None
        if len(self._entries) > self._capacity:
            self._entries.popitem(last=False)
        return False

    def __contains__(self, message: dict) -> bool:
        return fingerprint(message) in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class MessageProcessor:
    """Filters, dedups and formats inbox messages, then hands them to enqueue."""

    def __init__(
        self,
        voice_for: Callable[[str], Voice],
        enqueue: Callable[[QueueItem], object],
        fingerprints: Optional[FingerprintSet] = None,
    ):
        self._voice_for = voice_for
        self._enqueue = enqueue
        self._fingerprints = fingerprints if fingerprints is not None else FingerprintSet()

    def handle(self, message: dict) -> Optional[QueueItem]:
        """Process one raw message. Returns the enqueued item, or None if dropped."""
        if not isinstance(message, dict) or not should_speak(message):
            return None
        if self._fingerprints.seen(message):
            logger.debug(f"Dropping duplicate message from {message.get('from')}")
            return None

        sender = message.get("from") or "unknown"
        voice = self._voice_for(sender)
        item = QueueItem(text=prepare_text(message), voice_id=voice.id, sender=sender)
        self._enqueue(item)
        return item
