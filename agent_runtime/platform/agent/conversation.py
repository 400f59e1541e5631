"""Append-only conversation buffer owned by the processor.

The buffer is never pruned here; compaction belongs to the memory layer.
Outgoing request lists are derived from it without mutating it.
"""

from collections.abc import Iterable, Iterator

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from agent_runtime.platform.constants import (
    QUEUED_USER_PREFIX,
    QUEUED_USER_SUFFIX,
    SYSTEM_REMINDER_MARKER,
)


def message_text(message: BaseMessage) -> str:
    """Extract string content from a message.

    Args:
        message: LangChain message

    Returns:
        Message content as string; text parts of list content are joined
    """
    content = message.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        text_parts = [
            p.get("text", "") if isinstance(p, dict) else str(p)
            for p in content
            if not isinstance(p, dict) or p.get("type", "text") == "text"
        ]
        return "".join(text_parts)
    return str(content)


def _wrap_text(text: str) -> str | None:
    if not text.strip() or SYSTEM_REMINDER_MARKER in text:
        return None
    return f"{QUEUED_USER_PREFIX}{text}{QUEUED_USER_SUFFIX}"


def wrap_queued_user_message(message: HumanMessage) -> HumanMessage:
    """Wrap a queued user message in a system reminder.

    Returns the same object when there is nothing to wrap, so callers can
    detect changes by identity.
    """
    content = message.content
    if isinstance(content, str):
        wrapped = _wrap_text(content)
        if wrapped is None:
            return message
        return message.model_copy(update={"content": wrapped})

    if isinstance(content, list):
        updated = False
        parts: list = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                wrapped = _wrap_text(part.get("text") or "")
                if wrapped is not None:
                    updated = True
                    parts.append({**part, "text": wrapped})
                    continue
            parts.append(part)
        return message.model_copy(update={"content": parts}) if updated else message

    return message


def inject_queued_user_reminders(messages: list[BaseMessage]) -> list[BaseMessage]:
    """Wrap user messages that arrived after the last assistant message.

    A user message queued while the model was streaming would otherwise be
    easy for the model to skip. The rewrite is idempotent.

    Args:
        messages: Conversation messages in order

    Returns:
        The input list itself when nothing changed, otherwise a rewritten copy
    """
    last_assistant = -1
    for index in range(len(messages) - 1, -1, -1):
        if isinstance(messages[index], AIMessage):
            last_assistant = index
            break
    if last_assistant == -1:
        return messages

    changed = False
    updated: list[BaseMessage] = []
    for index, message in enumerate(messages):
        if index > last_assistant and isinstance(message, HumanMessage):
            wrapped = wrap_queued_user_message(message)
            changed = changed or wrapped is not message
            updated.append(wrapped)
        else:
            updated.append(message)
    return updated if changed else messages


class ConversationBuffer:
    """Ordered, append-only sequence of role-tagged messages."""

    def __init__(self, messages: Iterable[BaseMessage] = ()) -> None:
        self._messages: list[BaseMessage] = list(messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[BaseMessage]:
        return iter(self._messages)

    @property
    def messages(self) -> list[BaseMessage]:
        """A copy of the buffered messages in order."""
        return list(self._messages)

    def append(self, message: BaseMessage) -> None:
        self._messages.append(message)

    def extend(self, messages: Iterable[BaseMessage]) -> None:
        self._messages.extend(messages)

    def outgoing(self) -> list[BaseMessage]:
        """Messages to send to the model, with queued user messages wrapped."""
        return inject_queued_user_reminders(list(self._messages))

    def last_assistant_text(self) -> str:
        """Text of the last assistant message, or an empty string."""
        for message in reversed(self._messages):
            if isinstance(message, AIMessage):
                return message_text(message)
        return ""
