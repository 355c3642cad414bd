"""Relaying tool permission prompts from the assistant's hook to the chat.

The hook writes ``permission-request-<id>.json`` into the state directory
and blocks until ``permission-response-<id>`` appears next to it.
"""

import asyncio
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from .config import get_config
from .events import invoke_handler
from .fswatch import FileChangeWatch
from .logs import log_message
from .transcript import run_io

REQUEST_PREFIX = 'permission-request-'
RESPONSE_PREFIX = 'permission-response-'
READ_ATTEMPTS = 3
READ_RETRY_DELAY = 0.1


@dataclass
class PermissionRequest:
    request_id: str
    tool_name: str
    tool_input: Any
    file_path: str


RequestCallback = Callable[[PermissionRequest], Union[Awaitable[None], None]]


def is_request_file(path: str) -> bool:
    name = os.path.basename(path)
    return name.startswith(REQUEST_PREFIX) and name.endswith('.json')


def read_request(path: str) -> Optional[PermissionRequest]:
    """Parse a request file; None if it is unreadable or incomplete"""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log_message("WARNING", f"Unreadable permission request {path}: {e}")
        return None
    if not isinstance(data, dict) or not data.get('requestId'):
        return None
    return PermissionRequest(
        request_id=str(data['requestId']),
        tool_name=str(data.get('toolName') or ''),
        tool_input=data.get('toolInput'),
        file_path=path,
    )


def watch_permission_requests(on_request: RequestCallback,
                              state_dir: Optional[str] = None) -> Callable[[], None]:
    """Call ``on_request`` for each new request file; returns a stop function"""
    state_dir = state_dir or get_config().state_dir
    Path(state_dir).mkdir(parents=True, exist_ok=True)
    seen = set()
    tasks = set()

    async def handle(path: str) -> None:
        request = None
        for _ in range(READ_ATTEMPTS):
            request = await run_io(read_request, path)
            if request is not None:
                break
            # The hook may still be writing it
            await asyncio.sleep(READ_RETRY_DELAY)
        if request is None:
            seen.discard(path)
            return
        log_message("INFO", f"Permission request: {request.tool_name} ({request.request_id[:8]})")
        await invoke_handler(on_request, request, context="permission")

    def on_change(path: str) -> None:
        if path in seen:
            return
        seen.add(path)
        task = asyncio.ensure_future(handle(path))
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    def on_delete(path: str) -> None:
        # The hook removes the request once answered or timed out
        seen.discard(path)

    watch = FileChangeWatch(state_dir, on_change, accept=is_request_file, name='permissions',
                            on_delete=on_delete)
    watch.start()
    return watch.close


def respond_to_permission(request_id: str, approved: bool, state_dir: Optional[str] = None) -> str:
    """Write the decision the hook is waiting for; returns the response path"""
    state_dir = state_dir or get_config().state_dir
    Path(state_dir).mkdir(parents=True, exist_ok=True)
    response_path = os.path.join(state_dir, f"{RESPONSE_PREFIX}{request_id}")
    with open(response_path, 'w', encoding='utf-8') as f:
        f.write('approve' if approved else 'deny')
    log_message("INFO", f"Permission {'approved' if approved else 'denied'} ({request_id[:8]})")
    return response_path
