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
bridge.py - Sending chat messages into the attached session

Ties the pieces together for one incoming message: interrupt a turn that is
still running, take a baseline, type the text into the pane and watch for
the reply.
"""

import asyncio
from typing import Optional, Tuple

from .config import CodedoveConfig, get_config
from .events import WaitingState, WaitingType
from .logs import log_error, log_message
from .sessions import list_sessions
from .state import AttachedSession, AttachmentStore
from .tmux import PaneResult, TmuxPanes
from .watcher import ResponseCallback, SignalCallback
from .watcher_manager import WatcherManager


def waiting_answer(state: WaitingState, accept: bool = True, choice: Optional[int] = None) -> str:
    """Keystrokes answering ``state``: y/n, a bare Enter, or a 1-based option number"""
    if state.kind == WaitingType.YES_NO:
        return 'y' if accept else 'n'
    if state.kind == WaitingType.ENTER:
        return ''
    choices = state.choices or []
    index = 0 if choice is None else choice
    if not 0 <= index < len(choices):
        raise ValueError(f"choice {index} out of range for {len(choices)} options")
    return str(index + 1)


class InjectionBridge:
    """Caller side of the watcher manager: one instance per chat"""

    def __init__(self, manager: WatcherManager, attachments: AttachmentStore,
                 panes: Optional[TmuxPanes] = None, config: Optional[CodedoveConfig] = None):
        self.manager = manager
        self.attachments = attachments
        self.panes = panes if panes is not None else TmuxPanes()
        self.config = config or get_config()
        self._timer_task: Optional[asyncio.Task] = None
        self._timer: Optional[Tuple[float, str]] = None

    def is_chat_allowed(self, chat_id: Optional[int]) -> bool:
        """Messages from other chats are refused once ``allowed_chat_id`` is set"""
        allowed = self.config.allowed_chat_id
        return allowed is None or chat_id is None or chat_id == allowed

    def ensure_session(self) -> Optional[AttachedSession]:
        """The attached session, attaching to the most recent one if none is"""
        attached = self.attachments.load()
        if attached:
            return attached
        recent = list_sessions(limit=1, projects_path=self.config.projects_path)
        if not recent:
            return None
        session = recent[0]
        log_message("INFO", f"Auto-attaching to {session.session_id[:8]} ({session.project_name})")
        self.attachments.save(session.session_id, session.cwd)
        return AttachedSession(session.session_id, session.cwd)

    async def send_text(self, text: str, chat_id: Optional[int] = None,
                        on_response: Optional[ResponseCallback] = None,
                        on_complete: Optional[SignalCallback] = None,
                        interrupt: bool = True) -> PaneResult:
        """Inject ``text`` into the attached session and watch for the reply"""
        if not self.is_chat_allowed(chat_id):
            log_message("WARNING", f"Refusing message from chat {chat_id}")
            return PaneResult(found=False, reason='chat_not_allowed')

        attached = self.ensure_session()
        if attached is None:
            log_message("WARNING", "No session to send to")
            return PaneResult(found=False, reason='no_session')

        if interrupt and self.manager.is_active:
            log_message("INFO", f"Interrupting running turn in {attached.short_id}")
            await self.manager.interrupt(attached.cwd, self.panes)

        baseline = await self.manager.snapshot_baseline(attached.cwd)
        result = await self.panes.inject_input(attached.cwd, text)
        if not result.found:
            log_message("WARNING", f"Could not inject into {attached.short_id}: {result.reason}")
            return result

        await self.manager.start_injection_watcher(
            attached, chat_id, on_response=on_response, on_complete=on_complete,
            pre_baseline=baseline,
        )
        return result

    async def answer(self, state: WaitingState, accept: bool = True, choice: Optional[int] = None,
                     chat_id: Optional[int] = None) -> PaneResult:
        """Answer a waiting prompt; the assistant resumes, so its reply is watched too"""
        keys = waiting_answer(state, accept=accept, choice=choice)
        return await self.send_text(keys, chat_id=chat_id, interrupt=False)

    @property
    def timer_active(self) -> bool:
        return self._timer_task is not None

    def start_timer(self, interval: float, prompt: str) -> None:
        """Inject ``prompt`` every ``interval`` seconds until stopped; replaces a running timer"""
        self.stop_timer()
        self._timer = (interval, prompt)
        self._timer_task = asyncio.ensure_future(self._run_timer(interval, prompt))
        log_message("INFO", f"Timer started: every {interval:g}s")

    def stop_timer(self) -> Optional[Tuple[float, str]]:
        """Cancel the timer; returns its (interval, prompt), or None if none was running"""
        if self._timer_task is None:
            return None
        self._timer_task.cancel()
        self._timer_task = None
        stopped, self._timer = self._timer, None
        log_message("INFO", "Timer stopped")
        return stopped

    async def _run_timer(self, interval: float, prompt: str) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.timer_tick(prompt)

    async def timer_tick(self, prompt: str) -> bool:
        """One timer firing: skipped unless a session is attached and its pane is up"""
        try:
            attached = self.attachments.load()
            if attached is None:
                log_message("INFO", "Timer tick: no attached session, skipping")
                return False
            pane = await self.panes.find_pane(attached.cwd)
            if not pane.found:
                log_message("INFO", f"Timer tick: no pane for {attached.short_id} ({pane.reason}), skipping")
                return False

            log_message("INFO", f"Timer tick: injecting prompt into {attached.short_id}")
            result = await self.send_text(prompt, interrupt=False)
            return result.found
        except Exception as e:
            log_error("timer tick")(e)
            return False
