"""Tests for the single-active-watcher manager and rotation handling."""

import asyncio
import os
import time

import pytest
import pytest_asyncio

from codedove.sessions import LiveFile
from codedove.state import AttachedSession, AttachmentStore
from codedove.watcher_manager import WatchBaseline, WatcherManager
from tests.helpers import (
    DEFAULT_CWD,
    FakePanes,
    append_entries,
    assistant_text,
    assistant_tool,
    metadata_entry,
    result_entry,
    set_mtime,
    wait_for,
    write_entries,
)


@pytest.fixture
def attachments(state_dir):
    return AttachmentStore(str(state_dir / 'attached'))


@pytest_asyncio.fixture
async def manager(attachments, test_config):
    mgr = WatcherManager(attachments, config=test_config)
    yield mgr
    mgr.clear()


class TestSnapshotBaseline:
    @pytest.mark.asyncio
    async def test_size_of_live_file(self, manager, project_dir):
        path = str(project_dir / 's1.jsonl')
        write_entries(path, assistant_text('hello'))

        baseline = await manager.snapshot_baseline(DEFAULT_CWD)

        assert baseline.file_path == path
        assert baseline.session_id == 's1'
        assert baseline.offset == os.path.getsize(path)

    @pytest.mark.asyncio
    async def test_no_transcript(self, manager):
        assert await manager.snapshot_baseline('/no/such/project') is None


class TestStartInjectionWatcher:
    @pytest.mark.asyncio
    async def test_streams_reply_and_completes(self, manager, project_dir):
        path = str(project_dir / 's1.jsonl')
        write_entries(path, assistant_text('earlier turn'))
        texts, completions = [], []

        started = await manager.start_injection_watcher(
            AttachedSession('s1', DEFAULT_CWD), 42,
            on_response=lambda e: texts.append(e.text),
            on_complete=lambda: completions.append(1),
        )
        assert started
        assert manager.is_active

        append_entries(path, assistant_text('Build succeeded.'), result_entry())
        assert await wait_for(lambda: completions == [1])
        assert texts == ['Build succeeded.']
        assert not manager.is_active

    @pytest.mark.asyncio
    async def test_pre_baseline_is_used(self, manager, project_dir):
        path = str(project_dir / 's1.jsonl')
        write_entries(path, assistant_text('earlier'))
        baseline = await manager.snapshot_baseline(DEFAULT_CWD)
        # Reply lands before the watcher exists
        append_entries(path, assistant_text('quick answer'))
        texts = []

        await manager.start_injection_watcher(
            AttachedSession('s1', DEFAULT_CWD), None,
            on_response=lambda e: texts.append(e.text), pre_baseline=baseline,
        )

        assert await wait_for(lambda: texts == ['quick answer'])

    @pytest.mark.asyncio
    async def test_new_injection_flushes_previous_completion(self, manager, project_dir):
        path = str(project_dir / 's1.jsonl')
        write_entries(path, assistant_text('x'))
        first_done, second_done = [], []
        attached = AttachedSession('s1', DEFAULT_CWD)

        await manager.start_injection_watcher(attached, 1, on_complete=lambda: first_done.append(1))
        generation = manager.generation
        await manager.start_injection_watcher(attached, 1, on_complete=lambda: second_done.append(1))

        assert await wait_for(lambda: first_done == [1])
        assert second_done == []
        assert manager.generation == generation + 1
        assert manager.is_active

    @pytest.mark.asyncio
    async def test_stop_and_flush(self, manager, project_dir):
        write_entries(str(project_dir / 's1.jsonl'), assistant_text('x'))
        completions = []
        await manager.start_injection_watcher(AttachedSession('s1', DEFAULT_CWD), 1,
                                              on_complete=lambda: completions.append(1))

        flushed = manager.stop_and_flush()
        await flushed

        assert completions == [1]
        assert not manager.is_active
        assert manager.stop_and_flush() is None

    @pytest.mark.asyncio
    async def test_clear_does_not_complete(self, manager, project_dir):
        write_entries(str(project_dir / 's1.jsonl'), assistant_text('x'))
        completions = []
        await manager.start_injection_watcher(AttachedSession('s1', DEFAULT_CWD), 1,
                                              on_complete=lambda: completions.append(1))

        manager.clear()
        await asyncio.sleep(0.05)

        assert completions == []
        assert not manager.is_active

    @pytest.mark.asyncio
    async def test_rotation_is_persisted(self, manager, attachments, project_dir):
        now = time.time()
        write_entries(str(project_dir / 'old.jsonl'), assistant_text('before clear'))
        write_entries(str(project_dir / 'new.jsonl'), metadata_entry())
        set_mtime(str(project_dir / 'old.jsonl'), now - 100)
        attachments.save('old', DEFAULT_CWD)

        await manager.start_injection_watcher(AttachedSession('old', DEFAULT_CWD), 1)

        assert attachments.load() == AttachedSession('new', DEFAULT_CWD)

    @pytest.mark.asyncio
    async def test_no_transcript_completes_immediately(self, manager):
        completions = []
        started = await manager.start_injection_watcher(AttachedSession('s1', '/missing'), 1,
                                                        on_complete=lambda: completions.append(1))
        assert not started
        assert completions == [1]
        assert not manager.is_active

    @pytest.mark.asyncio
    async def test_superseded_resolution_is_discarded(self, attachments, test_config, project_dir):
        path = str(project_dir / 's1.jsonl')
        write_entries(path, assistant_text('x'))
        gate = asyncio.Event()
        calls = []

        async def slow_locator(cwd):
            calls.append(cwd)
            if len(calls) == 1:
                await gate.wait()
            return LiveFile(path, 's1')

        manager = WatcherManager(attachments, config=test_config, locator=slow_locator)
        first_done, second_done = [], []
        attached = AttachedSession('s1', DEFAULT_CWD)

        first = asyncio.ensure_future(manager.start_injection_watcher(
            attached, 1, on_complete=lambda: first_done.append(1)))
        await asyncio.sleep(0.01)
        assert await manager.start_injection_watcher(attached, 1, on_complete=lambda: second_done.append(1))
        active = manager._active
        gate.set()

        assert await first is False
        assert first_done == [1]
        assert second_done == []
        assert manager._active is active
        manager.clear()


class TestPostCompactionPoll:
    @pytest.mark.asyncio
    async def test_follows_new_file(self, manager, attachments, project_dir):
        old_path = str(project_dir / 'old.jsonl')
        write_entries(old_path, assistant_text('before compaction'))
        set_mtime(old_path, time.time() - 100)
        texts, completions = [], []

        poll = asyncio.ensure_future(manager.poll_for_post_compaction_session(
            manager.generation, DEFAULT_CWD, old_path,
            on_response=lambda e: texts.append(e.text),
            on_complete=lambda: completions.append(1),
        ))
        await asyncio.sleep(0.02)
        new_path = str(project_dir / 'new.jsonl')
        write_entries(new_path, metadata_entry())

        assert await poll is True
        assert attachments.load() == AttachedSession('new', DEFAULT_CWD)
        assert manager.is_active

        append_entries(new_path, assistant_text('Compacted. Continuing.'), result_entry())
        assert await wait_for(lambda: completions == [1])
        assert texts == ['Compacted. Continuing.']

    @pytest.mark.asyncio
    async def test_stale_generation_aborts(self, manager, project_dir):
        old_path = str(project_dir / 'old.jsonl')
        write_entries(old_path, assistant_text('x'))
        completions = []

        poll = asyncio.ensure_future(manager.poll_for_post_compaction_session(
            manager.generation, DEFAULT_CWD, old_path, on_complete=lambda: completions.append(1)))
        manager._generation += 1

        assert await poll is False
        assert completions == []
        assert not manager.is_active

    @pytest.mark.asyncio
    async def test_gives_up_after_deadline(self, manager, project_dir, test_config):
        test_config.rotation_poll_timeout = 0.2
        old_path = str(project_dir / 'old.jsonl')
        write_entries(old_path, assistant_text('x'))
        completions = []

        found = await manager.poll_for_post_compaction_session(
            manager.generation, DEFAULT_CWD, old_path, on_complete=lambda: completions.append(1))

        assert found is False
        assert completions == [1]

    @pytest.mark.asyncio
    async def test_launched_when_turn_ends_without_text(self, manager, attachments, project_dir):
        old_path = str(project_dir / 'old.jsonl')
        write_entries(old_path, assistant_text('before'))
        set_mtime(old_path, time.time() - 100)
        texts, completions = [], []

        await manager.start_injection_watcher(
            AttachedSession('old', DEFAULT_CWD), 1,
            on_response=lambda e: texts.append(e.text),
            on_complete=lambda: completions.append(1),
        )
        # /compact ends the turn with no text, then rotates
        append_entries(old_path, result_entry())
        assert await wait_for(lambda: completions == [1])

        new_path = str(project_dir / 'new.jsonl')
        write_entries(new_path, metadata_entry())
        assert await wait_for(lambda: manager.is_active)
        append_entries(new_path, assistant_text('Summary of the conversation so far'), result_entry())

        assert await wait_for(lambda: texts == ['Summary of the conversation so far'])
        assert await wait_for(lambda: completions == [1, 1])


    @pytest.mark.asyncio
    async def test_images_from_before_discovery_are_reported(self, attachments, test_config, project_dir, tmp_path):
        old_path = str(project_dir / 'old.jsonl')
        write_entries(old_path, assistant_text('before compaction'))
        set_mtime(old_path, time.time() - 100)
        image = tmp_path / 'diagram.png'
        image.write_bytes(b'\x89PNG')
        set_mtime(str(image), time.time() - 30)
        images, completions = [], []
        manager = WatcherManager(attachments, config=test_config, on_images=images.extend)

        try:
            poll = asyncio.ensure_future(manager.poll_for_post_compaction_session(
                manager.generation, DEFAULT_CWD, old_path,
                on_complete=lambda: completions.append(1), since=time.time() - 60))
            new_path = str(project_dir / 'new.jsonl')
            write_entries(new_path, metadata_entry())
            assert await poll is True

            append_entries(new_path,
                           assistant_tool('Write', {'file_path': str(image), 'content': ''}),
                           assistant_text('Drew the diagram.'), result_entry())
            assert await wait_for(lambda: completions == [1])
            assert [img.path for img in images] == [str(image)]
        finally:
            manager.clear()

    @pytest.mark.asyncio
    async def test_failed_delivery_still_polls_for_rotation(self, manager, attachments, project_dir):
        old_path = str(project_dir / 'old.jsonl')
        write_entries(old_path, assistant_text('before'))
        set_mtime(old_path, time.time() - 100)
        texts, completions = [], []

        def flaky(event):
            if event.text == 'Compacting...':
                raise RuntimeError('chat unreachable')
            texts.append(event.text)

        await manager.start_injection_watcher(
            AttachedSession('old', DEFAULT_CWD), 1,
            on_response=flaky, on_complete=lambda: completions.append(1),
        )
        append_entries(old_path, assistant_text('Compacting...'), result_entry())
        assert await wait_for(lambda: completions == [1])

        new_path = str(project_dir / 'new.jsonl')
        write_entries(new_path, metadata_entry())
        assert await wait_for(lambda: manager.is_active)
        append_entries(new_path, assistant_text('Back with a summary'), result_entry())

        assert await wait_for(lambda: texts == ['Back with a summary'])


class TestInterrupt:
    @pytest.mark.asyncio
    async def test_flushes_and_sends_ctrl_c(self, manager, project_dir):
        write_entries(str(project_dir / 's1.jsonl'), assistant_text('x'))
        completions = []
        await manager.start_injection_watcher(AttachedSession('s1', DEFAULT_CWD), 1,
                                              on_complete=lambda: completions.append(1))
        panes = FakePanes()

        result = await manager.interrupt(DEFAULT_CWD, panes)

        assert result.found
        assert panes.interrupts == ['%1']
        assert completions == [1]
        assert not manager.is_active

    @pytest.mark.asyncio
    async def test_no_pane(self, manager):
        panes = FakePanes(found=False, reason='no_tmux')
        result = await manager.interrupt(DEFAULT_CWD, panes)
        assert result.reason == 'no_tmux'
        assert panes.interrupts == []


def test_watch_baseline_records_time():
    before = time.time()
    baseline = WatchBaseline('/x.jsonl', 'x', 10)
    assert baseline.taken_at >= before
