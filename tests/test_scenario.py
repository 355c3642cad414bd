"""End-to-end scenarios over real files and filesystem notifications."""

import asyncio
import time

import pytest

from codedove.sessions import resolve_live_file
from codedove.state import AttachedSession, AttachmentStore
from codedove.watcher import ResponseWatcher
from codedove.watcher_manager import WatcherManager
from tests.helpers import (
    DEFAULT_CWD,
    append_entries,
    assistant_text,
    metadata_entry,
    result_entry,
    set_mtime,
    wait_for,
    write_entries,
)


@pytest.mark.asyncio
async def test_clear_rotation_follows_new_session(project_dir):
    old_path = str(project_dir / 'session-old.jsonl')
    new_path = str(project_dir / 'session-new.jsonl')
    write_entries(old_path, assistant_text('Old session answer'))
    set_mtime(old_path, time.time() - 60)
    write_entries(new_path, metadata_entry())

    live = await resolve_live_file(DEFAULT_CWD)
    assert live.session_id == 'session-new'

    texts, completions = [], []
    watcher = ResponseWatcher(live.file_path, 0, lambda e: texts.append(e.text),
                              on_complete=lambda: completions.append(1), grace=0.05)
    watcher.start()
    try:
        append_entries(old_path, assistant_text('Noise in the dead session'))
        append_entries(new_path, assistant_text('Fresh start.'), result_entry())
        assert await wait_for(lambda: completions == [1])
        assert texts == ['Fresh start.']
    finally:
        watcher.stop()


@pytest.mark.asyncio
async def test_injection_after_clear_updates_attachment(project_dir, state_dir, test_config):
    attachments = AttachmentStore(str(state_dir / 'attached'))
    attachments.save('session-old', DEFAULT_CWD)
    old_path = str(project_dir / 'session-old.jsonl')
    new_path = str(project_dir / 'session-new.jsonl')
    write_entries(old_path, assistant_text('before /clear'))
    set_mtime(old_path, time.time() - 60)
    write_entries(new_path, metadata_entry())

    manager = WatcherManager(attachments, config=test_config)
    texts, done = [], asyncio.Event()
    try:
        await manager.start_injection_watcher(
            attachments.load(), 1, on_response=lambda e: texts.append(e.text), on_complete=done.set)
        assert attachments.load() == AttachedSession('session-new', DEFAULT_CWD)

        append_entries(new_path, assistant_text('Hello again.'), result_entry())
        await asyncio.wait_for(done.wait(), timeout=5)
        assert texts == ['Hello again.']
    finally:
        manager.clear()
