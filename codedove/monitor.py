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
monitor.py - Detecting when the assistant is blocked waiting for the user

Every transcript under the projects root is watched. Writes to one file are
coalesced with a per-file debounce timer, then the latest assistant output
is classified. Each distinct blocking text is reported once per file.
"""

import asyncio
import os
import re
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from .config import get_config
from .events import WaitingState, WaitingType, invoke_handler
from .fswatch import FileChangeWatch
from .logs import log_message
from .tmux import TmuxPanes
from .transcript import (
    TRANSCRIPT_SUFFIX,
    async_read_entries,
    decode_project_name,
    extract_cwd,
    find_exit_plan_mode,
    last_assistant_text,
    project_dir_of,
    session_id_from_path,
)

WaitingCallback = Callable[[WaitingState], Union[Awaitable[None], None]]

YES_NO_PATTERNS = [
    re.compile(r'\(y/n\)', re.IGNORECASE),
    re.compile(r'\[y/N\]', re.IGNORECASE),
    re.compile(r'confirm\?', re.IGNORECASE),
]
ENTER_PATTERNS = [
    re.compile(r'press\s+enter', re.IGNORECASE),
    re.compile(r'hit\s+enter', re.IGNORECASE),
]

# "> 1. Yes" / "  2) No" / "❯ 3. Something"
CHOICE_LINE_PATTERN = re.compile(r'^\s*(?:[>❯›]\s*)?(\d+)[.)]\s+(.+?)\s*$')

# The plan approval menu is fixed UI, so it is not read from the pane
PLAN_APPROVAL_CHOICES = (
    "Yes, clear context and bypass permissions",
    "Yes, bypass permissions",
    "Yes, manually approve edits",
    "Type here to tell Claude what to change",
)

# Path parts below the projects root: project dir, session dir, file
MAX_WATCH_DEPTH = 3


def classify_waiting_type(text: str) -> Optional[WaitingType]:
    """Classify text that asks for a yes/no answer or for Enter"""
    trimmed = text.strip()
    if any(p.search(trimmed) for p in YES_NO_PATTERNS):
        return WaitingType.YES_NO
    if any(p.search(trimmed) for p in ENTER_PATTERNS):
        return WaitingType.ENTER
    return None


def parse_multiple_choices(pane_text: str) -> Optional[List[str]]:
    """Extract the option labels of a numbered menu from captured pane text.

    Only the last list on screen counts (a new list starts at each "1."). It
    must have at least two items numbered 1, 2, 3... without gaps; anything
    else is treated as ordinary numbered prose.
    """
    groups: List[List[tuple]] = []
    for line in pane_text.split('\n'):
        match = CHOICE_LINE_PATTERN.match(line)
        if not match:
            continue
        number = int(match.group(1))
        if not groups or number == 1:
            groups.append([])
        groups[-1].append((number, match.group(2)))

    if not groups:
        return None
    items = groups[-1]
    if len(items) < 2:
        return None
    if [number for number, _ in items] != list(range(1, len(items) + 1)):
        return None
    return [label for _, label in items]


def _echoes_text(choices: List[str], text: str) -> bool:
    """True when every option is just a numbered line of the response shown on screen"""
    lines = set()
    for line in text.split('\n'):
        match = CHOICE_LINE_PATTERN.match(line)
        if match:
            lines.add((int(match.group(1)), match.group(2)))
    return all((index, label) in lines for index, label in enumerate(choices, 1))


class WaitingStateMonitor:
    """Watches all transcripts and reports waiting states to ``on_waiting``"""

    def __init__(self, on_waiting: WaitingCallback, projects_path: Optional[str] = None,
                 debounce: Optional[float] = None, panes: Optional[TmuxPanes] = None):
        config = get_config()
        self.on_waiting = on_waiting
        self.projects_path = projects_path or config.projects_path
        self.debounce = config.monitor_debounce if debounce is None else debounce
        self.panes = panes if panes is not None else TmuxPanes()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._last_notified: Dict[str, str] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._watch: Optional[FileChangeWatch] = None
        self._stopped = False

    def start(self) -> bool:
        self._stopped = False
        self._watch = FileChangeWatch(
            self.projects_path,
            self.on_file_changed,
            recursive=True,
            accept=self._accepts,
            name='monitor',
        )
        started = self._watch.start()
        if started:
            log_message("INFO", f"Monitoring transcripts under {self.projects_path}")
        return started

    def stop(self) -> None:
        self._stopped = True
        if self._watch:
            self._watch.close()
            self._watch = None
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()

    def _accepts(self, path: str) -> bool:
        if not path.endswith(TRANSCRIPT_SUFFIX):
            return False
        rel = os.path.relpath(path, self.projects_path)
        if rel.startswith('..'):
            return False
        return len(rel.split(os.sep)) <= MAX_WATCH_DEPTH

    def on_file_changed(self, path: str) -> None:
        """(Re)start the debounce timer for ``path``"""
        if self._stopped or not path.endswith(TRANSCRIPT_SUFFIX):
            return
        existing = self._timers.pop(path, None)
        if existing:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[path] = loop.call_later(self.debounce, self._debounce_elapsed, path)

    def _debounce_elapsed(self, path: str) -> None:
        self._timers.pop(path, None)
        if self._stopped:
            return
        task = asyncio.ensure_future(self.evaluate(path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def evaluate(self, path: str) -> Optional[WaitingState]:
        """Classify the latest assistant output of ``path`` and notify if it is blocking"""
        entries = await async_read_entries(path)
        if not entries:
            return None

        text = last_assistant_text(entries)
        plan = find_exit_plan_mode(entries)
        key = text or ''
        if plan:
            key += f"\n[ExitPlanMode {plan.tool_id or ''}]"
        if not key:
            return None

        if self._last_notified.get(path) == key:
            return None
        self._last_notified[path] = key

        session_id = session_id_from_path(path)
        project_name = decode_project_name(project_dir_of(path))
        cwd = extract_cwd(entries) or ''

        state = None
        kind = classify_waiting_type(text) if text else None
        if kind:
            state = WaitingState(session_id, project_name, cwd, path, kind, text)
        elif plan:
            state = WaitingState(
                session_id, project_name, cwd, path,
                WaitingType.MULTIPLE_CHOICE,
                plan.prompt or text or '',
                list(PLAN_APPROVAL_CHOICES),
            )
        elif text:
            choices = await self._capture_choices(cwd)
            if choices and _echoes_text(choices, text):
                log_message("DEBUG", f"Numbered list in {session_id[:8]} is the response itself, not a menu")
                choices = None
            if choices:
                state = WaitingState(session_id, project_name, cwd, path,
                                     WaitingType.MULTIPLE_CHOICE, text, choices)

        if state is None:
            return None

        log_message("INFO", f"session {session_id[:8]} waiting ({state.kind.value}): {state.prompt[:80]}")
        await invoke_handler(self.on_waiting, state, context="notification")
        return state

    async def _capture_choices(self, cwd: str) -> Optional[List[str]]:
        """Read a numbered menu off the assistant's pane, if one can be found"""
        if not cwd:
            return None
        try:
            result = await self.panes.find_pane(cwd)
            if not result.found:
                log_message("DEBUG", f"No pane for {cwd}: {result.reason}")
                return None
            pane_text = await self.panes.capture_pane_text(result.pane_id)
        except Exception as e:
            log_message("DEBUG", f"Pane capture failed for {cwd}: {e}")
            return None
        return parse_multiple_choices(pane_text)
