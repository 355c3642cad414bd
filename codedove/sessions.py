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
sessions.py - Locating transcript files on disk

Claude Code keeps one directory per working directory under the projects
root and one JSONL file per session inside it. Clearing history or
compacting context starts a new file in the same directory, so "which file
is live" has to be re-derived from modification times and content.
"""

import os
import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from .config import get_config
from .logs import log_message
from .transcript import (
    TRANSCRIPT_SUFFIX,
    decode_project_name,
    extract_cwd,
    extract_waiting_prompt,
    has_conversation,
    last_assistant_text,
    read_entries,
    run_io,
    session_id_from_path,
)

NON_ALNUM_PATTERN = re.compile(r'[^a-zA-Z0-9]')
PREVIEW_LENGTH = 200


@dataclass(frozen=True)
class LiveFile:
    """The transcript currently representing a conversation"""
    file_path: str
    session_id: str


@dataclass
class SessionInfo:
    session_id: str
    cwd: str
    project_name: str
    last_message: str
    mtime: datetime
    file_path: str
    waiting_prompt: Optional[str] = None


def encode_project_dir(cwd: str) -> str:
    """Directory name Claude Code uses for ``cwd``: every non-alphanumeric character becomes '-'"""
    return NON_ALNUM_PATTERN.sub('-', cwd)


def _projects_root(projects_path: Optional[str]) -> str:
    return projects_path or get_config().projects_path


def _transcripts_by_mtime(project_dir: str) -> List[Tuple[str, float]]:
    """(path, mtime) for every transcript in ``project_dir``, newest first"""
    try:
        names = [n for n in os.listdir(project_dir) if n.endswith(TRANSCRIPT_SUFFIX)]
    except OSError:
        return []

    candidates = []
    for name in names:
        path = os.path.join(project_dir, name)
        try:
            candidates.append((path, os.stat(path).st_mtime))
        except OSError:
            continue
    candidates.sort(key=lambda item: item[1], reverse=True)
    return candidates


def find_live_file(cwd: str, projects_path: Optional[str] = None) -> Optional[LiveFile]:
    """Blocking implementation of :func:`resolve_live_file`."""
    project_dir = os.path.join(_projects_root(projects_path), encode_project_dir(cwd))
    candidates = _transcripts_by_mtime(project_dir)
    if not candidates:
        return None

    for index, (path, _mtime) in enumerate(candidates):
        entries = read_entries(path)
        if entries is None:
            continue
        if index == 0:
            # Freshly rotated session: empty or metadata only, no turn yet.
            # It is newer than every conversation file, so it is the live one.
            return LiveFile(path, session_id_from_path(path))
        if has_conversation(entries):
            return LiveFile(path, session_id_from_path(path))

    newest = candidates[0][0]
    return LiveFile(newest, session_id_from_path(newest))


async def resolve_live_file(cwd: str, projects_path: Optional[str] = None) -> Optional[LiveFile]:
    """Resolve the live transcript for ``cwd``, or None if there is none"""
    try:
        return await run_io(find_live_file, cwd, projects_path)
    except Exception as e:
        log_message("WARNING", f"resolve_live_file failed for {cwd}: {e}")
        return None


def list_sessions(limit: int = 20, projects_path: Optional[str] = None) -> List[SessionInfo]:
    """Newest session per project directory, most recently active first"""
    root = _projects_root(projects_path)
    try:
        project_dirs = os.listdir(root)
    except OSError:
        return []

    results = []
    for dir_name in project_dirs:
        candidates = _transcripts_by_mtime(os.path.join(root, dir_name))
        if not candidates:
            continue
        path, mtime = candidates[0]
        entries = read_entries(path) or []

        last_text = last_assistant_text(entries) or ''

        results.append(SessionInfo(
            session_id=session_id_from_path(path),
            cwd=extract_cwd(entries) or os.path.expanduser('~'),
            project_name=decode_project_name(dir_name),
            last_message=last_text[:PREVIEW_LENGTH].replace('\n', ' '),
            mtime=datetime.fromtimestamp(mtime),
            file_path=path,
            waiting_prompt=extract_waiting_prompt(last_text) if last_text else None,
        ))

    results.sort(key=lambda s: s.mtime, reverse=True)
    return results[:limit]


def find_session_file(session_id: str, projects_path: Optional[str] = None) -> Optional[str]:
    """Path of the transcript for ``session_id`` in any project directory"""
    root = _projects_root(projects_path)
    try:
        project_dirs = os.listdir(root)
    except OSError:
        return None
    for dir_name in project_dirs:
        candidate = os.path.join(root, dir_name, f"{session_id}{TRANSCRIPT_SUFFIX}")
        if os.path.isfile(candidate):
            return candidate
    return None
