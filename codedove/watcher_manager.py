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
watcher_manager.py - Owning the one active response watcher

The manager guarantees that at most one ResponseWatcher runs at a time and
follows the conversation when the assistant rotates to a new transcript
(after /clear or context compaction). Background rotation polls are
abandoned through a generation counter: every new injection bumps it and a
poll exits at its next wake-up once its generation is stale.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Set

from .config import CodedoveConfig, get_config
from .events import ResponseEvent, invoke_handler
from .logs import log_message
from .sessions import LiveFile, resolve_live_file
from .state import AttachedSession, AttachmentStore
from .tmux import PaneResult, TmuxPanes
from .transcript import async_file_size
from .watcher import ImagesCallback, ResponseCallback, ResponseWatcher, SignalCallback

Locator = Callable[[str], Awaitable[Optional[LiveFile]]]


@dataclass
class WatchBaseline:
    """Where to start reading a transcript for the next turn"""
    file_path: str
    session_id: str
    offset: int
    taken_at: float = field(default_factory=time.time)


class WatcherManager:
    """Single owner of the active ResponseWatcher"""

    def __init__(self, attachments: AttachmentStore, config: Optional[CodedoveConfig] = None,
                 on_response: Optional[ResponseCallback] = None,
                 on_ping: Optional[SignalCallback] = None,
                 on_images: Optional[ImagesCallback] = None,
                 locator: Optional[Locator] = None):
        self.attachments = attachments
        self.config = config or get_config()
        self.on_response = on_response
        self.on_ping = on_ping
        self.on_images = on_images
        self._locator = locator
        self._active: Optional[ResponseWatcher] = None
        self._active_on_complete: Optional[SignalCallback] = None
        self._generation = 0
        self._background: Set[asyncio.Task] = set()

    @property
    def is_active(self) -> bool:
        return self._active is not None

    @property
    def generation(self) -> int:
        return self._generation

    async def _resolve(self, cwd: str) -> Optional[LiveFile]:
        if self._locator is not None:
            return await self._locator(cwd)
        return await resolve_live_file(cwd, self.config.projects_path)

    def clear(self) -> None:
        """Stop the active watcher without running its completion"""
        if self._active:
            self._active.stop()
        self._active = None
        self._active_on_complete = None

    def stop_and_flush(self) -> Optional[asyncio.Future]:
        """Stop the active watcher and still run its ``on_complete``.

        Returns the scheduled completion call, or None if nothing was active.
        """
        if self._active is None:
            return None
        self._active.stop()
        self._active = None
        on_complete = self._active_on_complete
        self._active_on_complete = None
        log_message("DEBUG", "Flushed active watcher")
        return self._spawn(invoke_handler(on_complete, context="completion"))

    async def snapshot_baseline(self, cwd: str) -> Optional[WatchBaseline]:
        live = await self._resolve(cwd)
        if live is None:
            return None
        offset = await async_file_size(live.file_path)
        return WatchBaseline(live.file_path, live.session_id, offset)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _persist_rotation(self, old_session_id: str, new_session_id: str, cwd: str) -> None:
        log_message("INFO", f"Session rotated {old_session_id[:8]} -> {new_session_id[:8]}, updating attachment")
        self.attachments.save(new_session_id, cwd)

    def _launch(self, file_path: str, offset: int, on_response: Optional[ResponseCallback],
                on_complete: SignalCallback, since: Optional[float] = None) -> ResponseWatcher:
        watcher = ResponseWatcher(
            file_path, offset, on_response or self.on_response,
            on_ping=self.on_ping,
            on_complete=on_complete,
            on_images=self.on_images,
            ping_after=self.config.ping_after,
            grace=self.config.completion_grace,
            since=since,
        )
        self._active = watcher
        watcher.start()
        return watcher

    async def start_injection_watcher(self, attached: AttachedSession, chat_id: Optional[int] = None,
                                      on_response: Optional[ResponseCallback] = None,
                                      on_complete: Optional[SignalCallback] = None,
                                      pre_baseline: Optional[WatchBaseline] = None) -> bool:
        """Watch for the reply to a message just injected into ``attached``.

        Returns False when no watcher was started; ``on_complete`` has then
        already been called.
        """
        self.stop_and_flush()
        self._generation += 1
        my_generation = self._generation

        baseline = pre_baseline
        if baseline is None:
            baseline = await self.snapshot_baseline(attached.cwd)

        if my_generation != self._generation:
            log_message("INFO", f"Injection watcher for {attached.short_id} superseded before it started")
            await invoke_handler(on_complete, context="completion")
            return False

        if baseline is None:
            log_message("WARNING", f"No transcript found for {attached.cwd}")
            await invoke_handler(on_complete, context="completion")
            return False

        if baseline.session_id != attached.session_id:
            self._persist_rotation(attached.session_id, baseline.session_id, attached.cwd)

        delivered = False
        send = on_response or self.on_response

        async def wrapped_on_response(event: ResponseEvent) -> None:
            nonlocal delivered
            delivered = await invoke_handler(send, event, context="response") or delivered

        async def completed() -> None:
            if self._active is watcher:
                self._active = None
                self._active_on_complete = None
            await invoke_handler(on_complete, context="completion")
            if not delivered:
                self._spawn(self.poll_for_post_compaction_session(
                    my_generation, attached.cwd, baseline.file_path, on_response, on_complete,
                    since=baseline.taken_at))

        log_message("INFO", f"Watching {baseline.session_id[:8]} from offset {baseline.offset}"
                            + (f" for chat {chat_id}" if chat_id is not None else ""))
        self._active_on_complete = on_complete
        watcher = self._launch(baseline.file_path, baseline.offset, wrapped_on_response,
                               completed, since=baseline.taken_at)
        return True

    async def poll_for_post_compaction_session(self, generation: int, cwd: str, old_file_path: str,
                                               on_response: Optional[ResponseCallback] = None,
                                               on_complete: Optional[SignalCallback] = None,
                                               since: Optional[float] = None) -> bool:
        """Look for a rotated transcript for ``cwd`` and follow it from the start.

        Images written at or after ``since`` (default: when polling began) are
        reported. Returns True when a new transcript was found and a watcher
        started.
        """
        if since is None:
            since = time.time()
        interval = self.config.rotation_poll_interval
        deadline = time.monotonic() + self.config.rotation_poll_timeout
        while time.monotonic() < deadline:
            await asyncio.sleep(interval)
            if generation != self._generation:
                log_message("DEBUG", f"Rotation poll for {cwd} superseded")
                return False

            live = await self._resolve(cwd)
            if generation != self._generation:
                return False
            if live is None or live.file_path == old_file_path:
                continue

            log_message("INFO", f"New session {live.session_id[:8]} after rotation, restarting watcher")
            self.attachments.save(live.session_id, cwd)
            self.clear()

            async def completed() -> None:
                if self._active is watcher:
                    self._active = None
                    self._active_on_complete = None
                await invoke_handler(on_complete, context="completion")

            self._active_on_complete = on_complete
            watcher = self._launch(live.file_path, 0, on_response, completed, since=since)
            return True

        log_message("INFO", f"No new session for {cwd} after {self.config.rotation_poll_timeout:.0f}s")
        await invoke_handler(on_complete, context="completion")
        return False

    async def interrupt(self, cwd: str, panes: TmuxPanes) -> PaneResult:
        """Interrupt the running turn so the next message starts clean.

        Flushes the active watcher, sends Ctrl-C to the assistant's pane and
        waits for the interruption to be written to the transcript.
        """
        flushed = self.stop_and_flush()
        if flushed is not None:
            await flushed
        result = await panes.find_pane(cwd)
        if not result.found:
            log_message("INFO", f"Cannot interrupt {cwd}: {result.reason}")
            return result
        await panes.send_interrupt(result.pane_id)
        await asyncio.sleep(self.config.interrupt_settle)
        return result
