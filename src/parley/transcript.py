"""
Transcript well-formedness.

Providers reject a message list in which an assistant tool call goes
unanswered or a tool result answers nothing, and such a transcript
poisons every later call. These helpers keep the history valid on the
three paths that can break it: the pre-send repair of a fitted window,
a guarded stop with calls still pending, and a conversation persisted
mid-turn by a process that then died.
"""

import logging

from parley.types import Message, Role, ToolCall

logger = logging.getLogger(__name__)

INTERRUPTED_TOOL_RESULT = "error: tool call was interrupted before it completed."


def repair_messages(messages: list[Message]) -> list[Message]:
    """
    Return a copy of a model-bound message list that a provider will accept.

    - an assistant message with neither text nor tool calls is dropped
    - an assistant message with tool calls but no text gets content ""
    - a tool message with no content is dropped
    - a tool message whose call id was not issued by the nearest preceding
      assistant message is dropped (its caller fell outside the window)
    """
    repaired: list[Message] = []
    open_call_ids: set[str] = set()
    dropped = 0

    for msg in messages:
        if msg.role == Role.ASSISTANT:
            has_text = bool(msg.content and msg.content.strip())
            if not has_text and not msg.tool_calls:
                dropped += 1
                continue
            if msg.tool_calls:
                open_call_ids = {tc.id for tc in msg.tool_calls}
                if not msg.content:
                    msg = Message(
                        role=Role.ASSISTANT,
                        content="",
                        tool_calls=msg.tool_calls,
                        name=msg.name,
                    )
            else:
                open_call_ids = set()
            repaired.append(msg)
        elif msg.role == Role.TOOL:
            if msg.content is None or msg.tool_call_id not in open_call_ids:
                dropped += 1
                continue
            repaired.append(msg)
        else:
            if msg.role == Role.USER:
                open_call_ids = set()
            repaired.append(msg)

    if dropped:
        logger.debug(f"Transcript repair dropped {dropped} message(s)")
    return repaired


def synthesize_error_results(tool_calls: list[ToolCall], reason: str) -> list[Message]:
    """One error tool result per call id, in call order."""
    return [Message.tool(tc.id, f"error: {reason}") for tc in tool_calls]


def close_dangling_tool_calls(messages: list[Message]) -> list[Message]:
    """
    Answer tool calls left open at the end of a stored history.

    Finds the last assistant message with tool calls and appends an
    interrupted-error result for every call id that no following tool
    message answers. Returns the list unchanged when nothing is open.
    """
    for index in range(len(messages) - 1, -1, -1):
        msg = messages[index]
        if msg.role == Role.ASSISTANT and msg.tool_calls:
            answered = {
                m.tool_call_id for m in messages[index + 1:] if m.role == Role.TOOL
            }
            pending = [tc for tc in msg.tool_calls if tc.id not in answered]
            if not pending:
                return messages
            logger.warning(f"Closing {len(pending)} dangling tool call(s) from an interrupted turn")
            insert_at = index + 1
            while insert_at < len(messages) and messages[insert_at].role == Role.TOOL:
                insert_at += 1
            closing = [Message.tool(tc.id, INTERRUPTED_TOOL_RESULT) for tc in pending]
            return messages[:insert_at] + closing + messages[insert_at:]
        if msg.role in (Role.USER, Role.ASSISTANT):
            return messages
    return messages
