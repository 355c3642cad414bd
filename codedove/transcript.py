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
transcript.py - Reading Claude Code JSONL transcripts

Entries are treated as opaque typed records. Only text blocks, tool_use
blocks, the working directory and the ``result`` turn marker are inspected.
The parsing helpers are pure; the I/O helpers never raise on a missing or
unreadable file.
"""

import asyncio
import atexit
import json
import os
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

TRANSCRIPT_SUFFIX = '.jsonl'
IMAGE_PATH_PATTERN = re.compile(r'\.(png|jpg|jpeg|gif|webp)$', re.IGNORECASE)

WAITING_PATTERNS = [
    re.compile(r'press\s+enter', re.IGNORECASE),
    re.compile(r'\(y/n\)', re.IGNORECASE),
    re.compile(r'\[y/N\]', re.IGNORECASE),
    re.compile(r'confirm\?', re.IGNORECASE),
    re.compile(r'provide\s+(your\s+)?input', re.IGNORECASE),
    re.compile(r'waiting\s+for\s+(user\s+)?input', re.IGNORECASE),
]
QUESTION_END_PATTERN = re.compile(r'\?\s*$')
PROMPT_END_PATTERN = re.compile(r'[>:]\s*$')

Entry = Dict[str, Any]

# Thread pool for blocking file reads
_io_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix='codedove-io')


def _cleanup_io_executor():
    """Cleanup thread pool executor on exit"""
    _io_executor.shutdown(wait=False)


atexit.register(_cleanup_io_executor)


@dataclass
class PlanApproval:
    """An ExitPlanMode tool call ending the latest assistant turn"""
    tool_id: Optional[str]
    plan_text: Optional[str]
    adjacent_text: Optional[str]

    @property
    def prompt(self) -> Optional[str]:
        return self.plan_text or self.adjacent_text


def parse_entries(text: str) -> List[Entry]:
    """Parse JSONL text, skipping blank, malformed and non-object lines"""
    entries = []
    for line in text.split('\n'):
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return entries


def _content(entry: Entry) -> List[Dict[str, Any]]:
    message = entry.get('message')
    if not isinstance(message, dict):
        return []
    content = message.get('content')
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def text_blocks(entry: Entry) -> List[str]:
    """Text of every text block in an assistant entry"""
    if entry.get('type') != 'assistant':
        return []
    return [block.get('text') or '' for block in _content(entry) if block.get('type') == 'text']


def tool_uses(entry: Entry) -> List[Dict[str, Any]]:
    if entry.get('type') != 'assistant':
        return []
    return [block for block in _content(entry) if block.get('type') == 'tool_use']


def last_assistant_text(entries: List[Entry], stop_at_user: bool = False) -> Optional[str]:
    """Latest non-empty assistant text block, scanning backwards"""
    for entry in reversed(entries):
        if stop_at_user and entry.get('type') == 'user':
            break
        blocks = text_blocks(entry)
        if not blocks:
            continue
        text = blocks[-1]
        if text.strip():
            return text
    return None


def has_conversation(entries: Iterable[Entry]) -> bool:
    """True when at least one assistant entry carries text or a tool call"""
    return any(text_blocks(entry) or tool_uses(entry) for entry in entries)


def extract_cwd(entries: Iterable[Entry]) -> Optional[str]:
    """Working directory recorded on the first assistant entry that has one"""
    for entry in entries:
        if entry.get('type') == 'assistant' and entry.get('cwd'):
            return entry['cwd']
    return None


def has_completion_marker(entries: Iterable[Entry]) -> bool:
    """Whether any entry is the ``result`` turn-completion marker"""
    return any(entry.get('type') == 'result' for entry in entries)


def find_exit_plan_mode(entries: List[Entry]) -> Optional[PlanApproval]:
    """Detect an ExitPlanMode call in the latest assistant turn"""
    for entry in reversed(entries):
        if entry.get('type') == 'user':
            break
        for block in tool_uses(entry):
            if block.get('name') != 'ExitPlanMode':
                continue
            tool_input = block.get('input')
            plan = tool_input.get('plan') if isinstance(tool_input, dict) else None
            texts = [t for t in text_blocks(entry) if t.strip()]
            return PlanApproval(
                tool_id=block.get('id'),
                plan_text=plan if isinstance(plan, str) and plan.strip() else None,
                adjacent_text=texts[-1] if texts else last_assistant_text(entries, stop_at_user=True),
            )
    return None


def extract_written_image_paths(entries: Iterable[Entry]) -> List[str]:
    """Paths of image files created through the Write tool"""
    paths = []
    for entry in entries:
        for block in tool_uses(entry):
            if block.get('name') != 'Write':
                continue
            tool_input = block.get('input')
            if not isinstance(tool_input, dict):
                continue
            file_path = tool_input.get('file_path')
            if isinstance(file_path, str) and IMAGE_PATH_PATTERN.search(file_path):
                paths.append(file_path)
    return paths


def extract_waiting_prompt(text: str) -> Optional[str]:
    """Loose check for text that reads like a prompt; used for listing previews"""
    trimmed = text.strip()
    if (any(p.search(trimmed) for p in WAITING_PATTERNS)
            or QUESTION_END_PATTERN.search(trimmed)
            or PROMPT_END_PATTERN.search(trimmed)):
        return trimmed
    return None


def session_id_from_path(file_path: str) -> str:
    name = os.path.basename(file_path)
    if name.endswith(TRANSCRIPT_SUFFIX):
        name = name[:-len(TRANSCRIPT_SUFFIX)]
    return name


def decode_project_name(dir_name: str) -> str:
    """Last path component of an encoded project directory name"""
    decoded = dir_name.lstrip('-').replace('-', '/')
    return decoded.split('/')[-1] or dir_name


def project_dir_of(file_path: str) -> str:
    return os.path.basename(os.path.dirname(file_path))


def read_bytes(file_path: str) -> Optional[bytes]:
    try:
        with open(file_path, 'rb') as f:
            return f.read()
    except OSError:
        return None


def read_entries(file_path: str, offset: int = 0) -> Optional[List[Entry]]:
    """Entries appended after ``offset``; None if the file is unreadable"""
    data = read_bytes(file_path)
    if data is None:
        return None
    return parse_entries(data[offset:].decode('utf-8', errors='replace'))


def file_size(file_path: str) -> int:
    try:
        return os.path.getsize(file_path)
    except OSError:
        return 0


async def async_read_entries(file_path: str, offset: int = 0) -> Optional[List[Entry]]:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_io_executor, read_entries, file_path, offset)


async def async_file_size(file_path: str) -> int:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_io_executor, file_size, file_path)


async def run_io(func, *args):
    """Run a blocking helper on the shared I/O pool"""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_io_executor, func, *args)
