"""Builders for transcript entries and small async helpers shared by the tests."""

import asyncio
import json
import os
from typing import Callable, Dict, List, Optional

from codedove.tmux import PaneResult

DEFAULT_CWD = '/home/dev/proj'


def assistant_text(text: str, cwd: str = DEFAULT_CWD) -> Dict:
    return {
        'type': 'assistant',
        'cwd': cwd,
        'message': {'role': 'assistant', 'content': [{'type': 'text', 'text': text}]},
    }


def assistant_tool(name: str, tool_input, tool_id: str = 'toolu_1', text: Optional[str] = None,
                   cwd: str = DEFAULT_CWD) -> Dict:
    content = []
    if text is not None:
        content.append({'type': 'text', 'text': text})
    content.append({'type': 'tool_use', 'id': tool_id, 'name': name, 'input': tool_input})
    return {'type': 'assistant', 'cwd': cwd, 'message': {'role': 'assistant', 'content': content}}


def user_text(text: str) -> Dict:
    return {'type': 'user', 'message': {'role': 'user', 'content': text}}


def metadata_entry(session_id: str = 'new') -> Dict:
    return {'type': 'summary', 'summary': 'New session', 'leafUuid': session_id}


def result_entry() -> Dict:
    return {'type': 'result', 'subtype': 'success'}


def append_entries(path: str, *entries: Dict) -> None:
    with open(path, 'a', encoding='utf-8') as f:
        for entry in entries:
            f.write(json.dumps(entry) + '\n')


def write_entries(path: str, *entries: Dict) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        for entry in entries:
            f.write(json.dumps(entry) + '\n')


def set_mtime(path: str, mtime: float) -> None:
    os.utime(path, (mtime, mtime))


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class FakePanes:
    """Stand-in for TmuxPanes that records what was sent"""

    def __init__(self, pane_text: str = '', found: bool = True, reason: Optional[str] = None):
        self.pane_text = pane_text
        self.found = found
        self.reason = reason
        self.sent: List[str] = []
        self.interrupts: List[str] = []
        self.lookups: List[str] = []
        self.on_send: Optional[Callable[[str], None]] = None

    async def find_pane(self, cwd: str) -> PaneResult:
        self.lookups.append(cwd)
        if not self.found:
            return PaneResult(found=False, reason=self.reason or 'no_claude_pane')
        return PaneResult(found=True, pane_id='%1')

    async def capture_pane_text(self, pane_id: str) -> str:
        return self.pane_text

    async def send_interrupt(self, pane_id: str) -> bool:
        self.interrupts.append(pane_id)
        return True

    async def inject_input(self, cwd: str, text: str) -> PaneResult:
        result = await self.find_pane(cwd)
        if result.found:
            self.sent.append(text)
            if self.on_send:
                self.on_send(text)
        return result
