"""Events handed to the chat layer, and the helper used to invoke its handlers."""

import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from .logs import log_error


class WaitingType(Enum):
    YES_NO = "YES_NO"
    ENTER = "ENTER"
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"


@dataclass
class WaitingState:
    """The assistant is blocked on input of the given kind"""
    session_id: str
    project_name: str
    cwd: str
    file_path: str
    kind: WaitingType
    prompt: str
    choices: Optional[List[str]] = None


@dataclass
class ResponseEvent:
    """One text block the assistant produced after an injection"""
    session_id: str
    project_name: str
    cwd: str
    file_path: str
    text: str


@dataclass
class DetectedImage:
    """An image file the assistant wrote during a turn; ``data`` is base64"""
    path: str
    media_type: str
    data: str


async def invoke_handler(handler: Optional[Callable[..., Any]], *args: Any, context: str = "handler") -> bool:
    """Call a sync or async handler, absorbing and logging its failure.

    Returns True when the handler ran without raising.
    """
    if handler is None:
        return True
    try:
        result = handler(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        log_error(context)(e)
        return False
    return True
