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
tmux.py - Finding the assistant's tmux pane and talking to it

Failures (tmux missing, no server, no matching pane) come back as a
PaneResult with a reason rather than as exceptions; callers treat them as
"cannot do that right now".
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .logs import log_message

NO_TMUX = 'no_tmux'
NO_CLAUDE_PANE = 'no_claude_pane'
AMBIGUOUS = 'ambiguous'

PANE_FORMAT = '#{pane_id} #{pane_last_used} #{pane_current_command} #{pane_current_path}'

# Claude Code sets its process title to its version string (e.g. "2.1.47")
VERSION_COMMAND_PATTERN = re.compile(r'^\d+\.\d+\.\d+')


@dataclass
class TmuxPane:
    pane_id: str
    last_used: int
    command: str
    cwd: str


@dataclass
class PaneResult:
    """Outcome of a pane lookup: found with an id, or not found with a reason"""
    found: bool
    pane_id: Optional[str] = None
    reason: Optional[str] = None
    panes: List[TmuxPane] = field(default_factory=list)


def parse_pane_listing(stdout: str) -> List[TmuxPane]:
    panes = []
    for line in stdout.strip().split('\n'):
        if not line.strip():
            continue
        parts = line.split(' ')
        if len(parts) < 3:
            continue
        try:
            last_used = int(parts[1])
        except ValueError:
            last_used = 0
        panes.append(TmuxPane(
            pane_id=parts[0],
            last_used=last_used,
            command=parts[2],
            cwd=' '.join(parts[3:]),  # paths may contain spaces
        ))
    return panes


def is_claude_pane(pane: TmuxPane) -> bool:
    return 'claude' in pane.command or bool(VERSION_COMMAND_PATTERN.match(pane.command))


def _most_recent(panes: List[TmuxPane]) -> TmuxPane:
    return max(panes, key=lambda p: p.last_used)


def find_best_pane(panes: List[TmuxPane], target_cwd: str) -> Optional[TmuxPane]:
    """Assistant pane for ``target_cwd``: exact directory first, then a parent directory"""
    claude_panes = [p for p in panes if is_claude_pane(p)]
    if not claude_panes:
        return None

    exact = [p for p in claude_panes if p.cwd == target_cwd]
    if exact:
        return _most_recent(exact)

    parents = [p for p in claude_panes if target_cwd.startswith(p.cwd.rstrip('/') + '/')]
    if parents:
        return _most_recent(parents)

    return None


class TmuxPanes:
    """Pane capability backed by the tmux command line"""

    def __init__(self, tmux_bin: str = 'tmux'):
        self.tmux_bin = tmux_bin

    async def _run(self, *args: str) -> Tuple[int, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.tmux_bin, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log_message("DEBUG", f"tmux unavailable: {e}")
            return 127, ''
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            log_message("DEBUG", f"tmux {args[0]} failed ({proc.returncode}): {stderr.decode(errors='replace').strip()}")
        return proc.returncode, stdout.decode('utf-8', errors='replace')

    async def list_panes(self) -> List[TmuxPane]:
        code, stdout = await self._run('list-panes', '-a', '-F', PANE_FORMAT)
        if code != 0:
            return []
        return parse_pane_listing(stdout)

    async def find_pane(self, cwd: str) -> PaneResult:
        panes = await self.list_panes()
        if not panes:
            return PaneResult(found=False, reason=NO_TMUX)

        best = find_best_pane(panes, cwd)
        if best:
            return PaneResult(found=True, pane_id=best.pane_id)

        claude_panes = [p for p in panes if is_claude_pane(p)]
        if not claude_panes:
            return PaneResult(found=False, reason=NO_CLAUDE_PANE)
        if len(claude_panes) > 1:
            return PaneResult(found=False, reason=AMBIGUOUS, panes=claude_panes)

        # A single assistant pane in another directory is still the one to use
        return PaneResult(found=True, pane_id=claude_panes[0].pane_id)

    async def capture_pane_text(self, pane_id: str) -> str:
        code, stdout = await self._run('capture-pane', '-p', '-t', pane_id)
        return stdout if code == 0 else ''

    async def send_keys(self, pane_id: str, text: str) -> bool:
        """Type ``text`` literally into the pane, then press Enter"""
        if text:
            code, _ = await self._run('send-keys', '-t', pane_id, '-l', text)
            if code != 0:
                return False
        code, _ = await self._run('send-keys', '-t', pane_id, 'Enter')
        return code == 0

    async def send_raw_key(self, pane_id: str, key: str) -> bool:
        code, _ = await self._run('send-keys', '-t', pane_id, key)
        return code == 0

    async def send_interrupt(self, pane_id: str) -> bool:
        return await self.send_raw_key(pane_id, 'C-c')

    async def inject_input(self, cwd: str, text: str) -> PaneResult:
        result = await self.find_pane(cwd)
        if result.found:
            log_message("INFO", f"Injecting into pane {result.pane_id}: {text[:60]}")
            await self.send_keys(result.pane_id, text)
        return result
