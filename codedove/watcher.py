#!/usr/bin/env python3

# CodeDove - Remote chat bridge for terminal coding assistants
# Copyright (C) 2025 Robert Macrae
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
watcher.py - Streaming the assistant's reply to an injected message

A ResponseWatcher follows one transcript from a byte offset. Every new text
block is handed on as soon as it appears; the ``result`` entry ends the
turn. The watcher moves WATCHING -> COMPLETING -> STOPPED, or straight to
STOPPED when stopped from outside (in which case ``on_complete`` is not
called).
"""

import asyncio
import base64
import os
import time
from typing import Awaitable, Callable, List, Optional, Set, Union

from .config import get_config
from .events import DetectedImage, ResponseEvent, invoke_handler
from .fswatch import FileChangeWatch
from .logs import log_message
from .transcript import (
    Entry,
    async_read_entries,
    decode_project_name,
    extract_cwd,
    extract_written_image_paths,
    has_completion_marker,
    last_assistant_text,
    project_dir_of,
    read_bytes,
    run_io,
    session_id_from_path,
)

WATCHING = 'watching'
COMPLETING = 'completing'
STOPPED = 'stopped'

# File timestamps come from a coarser clock than time.time()
MTIME_SLACK = 1.0

IMAGE_MEDIA_TYPES = {
    '.png': 'image/png',
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.gif': 'image/gif',
    '.webp': 'image/webp',
}

ResponseCallback = Callable[[ResponseEvent], Union[Awaitable[None], None]]
ImagesCallback = Callable[[List[DetectedImage]], Union[Awaitable[None], None]]
SignalCallback = Callable[[], Union[Awaitable[None], None]]


def _same_file(a: str, b: str) -> bool:
    return os.path.realpath(a) == os.path.realpath(b)


def load_images(paths: List[str], since: float) -> List[DetectedImage]:
    """Read and base64-encode the images in ``paths`` modified at or after ``since``"""
    images = []
    for path in paths:
        try:
            if os.path.getmtime(path) < since - MTIME_SLACK:
                continue
        except OSError:
            log_message("DEBUG", f"Image {path} no longer exists")
            continue
        data = read_bytes(path)
        if data is None:
            continue
        ext = os.path.splitext(path)[1].lower()
        images.append(DetectedImage(
            path=path,
            media_type=IMAGE_MEDIA_TYPES.get(ext, 'application/octet-stream'),
            data=base64.b64encode(data).decode('ascii'),
        ))
    return images


class ResponseWatcher:
    """Delivers the assistant's text appended to ``file_path`` after ``baseline``"""

    def __init__(self, file_path: str, baseline: int, on_response: ResponseCallback,
                 on_ping: Optional[SignalCallback] = None,
                 on_complete: Optional[SignalCallback] = None,
                 on_images: Optional[ImagesCallback] = None,
                 ping_after: Optional[float] = None, grace: Optional[float] = None,
                 since: Optional[float] = None):
        config = get_config()
        self.file_path = os.path.abspath(file_path)
        self.baseline = baseline
        self.on_response = on_response
        self.on_ping = on_ping
        self.on_complete = on_complete
        self.on_images = on_images
        self.ping_after = config.ping_after if ping_after is None else ping_after
        self.grace = config.completion_grace if grace is None else grace
        # Images older than this belong to earlier turns
        self.since = time.time() if since is None else since

        self.session_id = session_id_from_path(self.file_path)
        self.project_name = decode_project_name(project_dir_of(self.file_path))
        self.cwd = ''

        self._state = WATCHING
        self._watch: Optional[FileChangeWatch] = None
        self._ping_handle: Optional[asyncio.TimerHandle] = None
        self._last_sent: Optional[str] = None
        self._pending_delivery: Optional[asyncio.Future] = None
        self._completion_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Future] = set()
        self._image_paths: List[str] = []
        self._reads_started = 0
        self._latest_read = 0

    @property
    def state(self) -> str:
        return self._state

    @property
    def delivered(self) -> bool:
        return self._last_sent is not None

    def start(self) -> bool:
        """Begin watching. Content already past the baseline is picked up immediately."""
        self._watch = FileChangeWatch(
            os.path.dirname(self.file_path),
            self._on_change,
            accept=lambda path: _same_file(path, self.file_path),
            name=f"watcher {self.session_id[:8]}",
        )
        started = self._watch.start()
        if self.ping_after > 0:
            loop = asyncio.get_running_loop()
            self._ping_handle = loop.call_later(self.ping_after, self._ping)
        log_message("DEBUG", f"Watching {self.session_id[:8]} from offset {self.baseline}")
        self._on_change(self.file_path)
        return started

    def stop(self) -> None:
        if self._state == STOPPED:
            return
        self._state = STOPPED
        self._release()
        if self._completion_task and self._completion_task is not asyncio.current_task():
            self._completion_task.cancel()

    def _release(self) -> None:
        if self._watch:
            self._watch.close()
            self._watch = None
        if self._ping_handle:
            self._ping_handle.cancel()
            self._ping_handle = None

    def _spawn(self, coro) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _on_change(self, path: str) -> None:
        if self._state != WATCHING:
            return
        self._spawn(self._check())

    async def _read_new_entries(self) -> Optional[List[Entry]]:
        entries = await async_read_entries(self.file_path, self.baseline)
        if entries is None:
            # Unreadable for now; the next change notification retries
            return None
        self.cwd = extract_cwd(entries) or self.cwd
        for path in extract_written_image_paths(entries):
            if path not in self._image_paths:
                self._image_paths.append(path)
        return entries

    async def _check(self) -> None:
        self._reads_started += 1
        seq = self._reads_started
        entries = await self._read_new_entries()
        if entries is None or self._state != WATCHING:
            return
        # Reads run on a thread pool and can finish out of order
        if seq < self._latest_read:
            return
        self._latest_read = seq

        text = last_assistant_text(entries)
        if text and text != self._last_sent:
            self._deliver(text)

        if has_completion_marker(entries) and self._completion_task is None:
            self._state = COMPLETING
            self._completion_task = asyncio.ensure_future(self._complete())

    def _deliver(self, text: str) -> None:
        # Recorded before any await so an overlapping check sees it
        self._last_sent = text
        self._pending_delivery = self._spawn(self._send(text, self._pending_delivery))

    async def _send(self, text: str, previous: Optional[asyncio.Future]) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        if self._state == STOPPED:
            return
        log_message("INFO", f"Response from {self.session_id[:8]}: {text[:60]}")
        event = ResponseEvent(self.session_id, self.project_name, self.cwd, self.file_path, text)
        await invoke_handler(self.on_response, event, context="response")

    async def _await_delivery(self) -> None:
        if self._pending_delivery is not None:
            await asyncio.wait([self._pending_delivery])

    async def _complete(self) -> None:
        await self._await_delivery()

        # The marker can land just before the final text write
        await asyncio.sleep(self.grace)
        if self._state == STOPPED:
            return
        entries = await self._read_new_entries()
        if entries:
            text = last_assistant_text(entries)
            if text and text != self._last_sent:
                self._deliver(text)
        await self._await_delivery()
        if self._state == STOPPED:
            return

        images = await run_io(load_images, list(self._image_paths), self.since)
        if images and self._state != STOPPED:
            log_message("INFO", f"Detected {len(images)} image(s) in {self.session_id[:8]}")
            await invoke_handler(self.on_images, images, context="images")

        if self._state == STOPPED:
            return
        self._state = STOPPED
        self._release()
        log_message("INFO", f"Turn complete for {self.session_id[:8]}")
        await invoke_handler(self.on_complete, context="completion")

    def _ping(self) -> None:
        self._ping_handle = None
        if self._state != WATCHING or self._last_sent is not None:
            return
        log_message("INFO", f"No response yet from {self.session_id[:8]}, sending ping")
        self._spawn(invoke_handler(self.on_ping, context="ping"))


def watch_for_response(file_path: str, baseline: int, on_response: ResponseCallback,
                       on_ping: Optional[SignalCallback] = None,
                       on_complete: Optional[SignalCallback] = None,
                       on_images: Optional[ImagesCallback] = None,
                       **kwargs) -> Callable[[], None]:
    """Start a ResponseWatcher and return its stop function"""
    watcher = ResponseWatcher(file_path, baseline, on_response, on_ping=on_ping,
                              on_complete=on_complete, on_images=on_images, **kwargs)
    watcher.start()
    return watcher.stop
