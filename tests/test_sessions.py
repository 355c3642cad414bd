"""Tests for locating live transcript files."""

import time

import pytest

from codedove.sessions import (
    encode_project_dir,
    find_live_file,
    find_session_file,
    list_sessions,
    resolve_live_file,
)
from tests.helpers import (
    DEFAULT_CWD,
    assistant_text,
    metadata_entry,
    set_mtime,
    user_text,
    write_entries,
)


def test_encode_project_dir():
    assert encode_project_dir('/home/dev/my.proj') == '-home-dev-my-proj'
    assert encode_project_dir('/Users/a_b/x y') == '-Users-a-b-x-y'


class TestFindLiveFile:
    def test_no_directory(self, projects_dir):
        assert find_live_file('/nowhere', str(projects_dir)) is None

    def test_empty_directory(self, project_dir, projects_dir):
        assert find_live_file(DEFAULT_CWD, str(projects_dir)) is None

    def test_newest_file_with_conversation(self, project_dir, projects_dir):
        now = time.time()
        write_entries(str(project_dir / 'older.jsonl'), assistant_text('old'))
        write_entries(str(project_dir / 'newer.jsonl'), assistant_text('new'))
        set_mtime(str(project_dir / 'older.jsonl'), now - 100)
        set_mtime(str(project_dir / 'newer.jsonl'), now - 10)

        live = find_live_file(DEFAULT_CWD, str(projects_dir))
        assert live.session_id == 'newer'

    def test_rotated_metadata_only_file_wins(self, project_dir, projects_dir):
        now = time.time()
        write_entries(str(project_dir / 'session-old.jsonl'), user_text('hi'), assistant_text('Done.'))
        write_entries(str(project_dir / 'session-new.jsonl'), metadata_entry())
        set_mtime(str(project_dir / 'session-old.jsonl'), now - 100)
        set_mtime(str(project_dir / 'session-new.jsonl'), now)

        live = find_live_file(DEFAULT_CWD, str(projects_dir))
        assert live.session_id == 'session-new'
        assert live.session_id != 'session-old'
        assert live.file_path.endswith('session-new.jsonl')

    def test_empty_newest_file_is_selected(self, project_dir, projects_dir):
        now = time.time()
        write_entries(str(project_dir / 'session-old.jsonl'), assistant_text('content'))
        (project_dir / 'session-new.jsonl').write_text('')
        set_mtime(str(project_dir / 'session-old.jsonl'), now - 60)
        set_mtime(str(project_dir / 'session-new.jsonl'), now)

        assert find_live_file(DEFAULT_CWD, str(projects_dir)).session_id == 'session-new'

    def test_partial_line_newest_file_is_selected(self, project_dir, projects_dir):
        now = time.time()
        write_entries(str(project_dir / 'session-old.jsonl'), assistant_text('content'))
        (project_dir / 'session-new.jsonl').write_text('{"type": "summ')
        set_mtime(str(project_dir / 'session-old.jsonl'), now - 60)
        set_mtime(str(project_dir / 'session-new.jsonl'), now)

        assert find_live_file(DEFAULT_CWD, str(projects_dir)).session_id == 'session-new'

    def test_unreadable_newest_falls_through(self, project_dir, projects_dir):
        now = time.time()
        write_entries(str(project_dir / 'chat.jsonl'), assistant_text('content'))
        write_entries(str(project_dir / 'meta.jsonl'), metadata_entry())
        (project_dir / 'odd.jsonl').mkdir()
        set_mtime(str(project_dir / 'chat.jsonl'), now - 200)
        set_mtime(str(project_dir / 'meta.jsonl'), now - 100)
        set_mtime(str(project_dir / 'odd.jsonl'), now)

        assert find_live_file(DEFAULT_CWD, str(projects_dir)).session_id == 'chat'

    def test_falls_back_to_newest(self, project_dir, projects_dir):
        (project_dir / 'only.jsonl').write_text('')
        assert find_live_file(DEFAULT_CWD, str(projects_dir)).session_id == 'only'

    def test_ignores_other_files(self, project_dir, projects_dir):
        (project_dir / 'notes.txt').write_text('x')
        assert find_live_file(DEFAULT_CWD, str(projects_dir)) is None


@pytest.mark.asyncio
async def test_resolve_live_file_uses_configured_root(project_dir):
    write_entries(str(project_dir / 'abc.jsonl'), assistant_text('hello'))
    live = await resolve_live_file(DEFAULT_CWD)
    assert live.session_id == 'abc'


@pytest.mark.asyncio
async def test_resolve_live_file_missing(projects_dir):
    assert await resolve_live_file('/not/a/project') is None


class TestListSessions:
    def test_newest_session_per_project(self, projects_dir):
        now = time.time()
        a = projects_dir / '-home-dev-alpha'
        b = projects_dir / '-home-dev-beta'
        write_entries(str(a / 'a1.jsonl'), assistant_text('alpha old', cwd='/home/dev/alpha'))
        write_entries(str(a / 'a2.jsonl'), assistant_text('alpha new', cwd='/home/dev/alpha'))
        write_entries(str(b / 'b1.jsonl'), assistant_text('beta\nreply', cwd='/home/dev/beta'))
        set_mtime(str(a / 'a1.jsonl'), now - 300)
        set_mtime(str(a / 'a2.jsonl'), now - 200)
        set_mtime(str(b / 'b1.jsonl'), now - 100)

        sessions = list_sessions(projects_path=str(projects_dir))
        assert [s.session_id for s in sessions] == ['b1', 'a2']
        assert sessions[0].project_name == 'beta'
        assert sessions[0].cwd == '/home/dev/beta'
        assert sessions[0].last_message == 'beta reply'

    def test_limit(self, projects_dir):
        for name in ('x', 'y', 'z'):
            write_entries(str(projects_dir / f'-{name}' / f'{name}.jsonl'), assistant_text(name))
        assert len(list_sessions(limit=2, projects_path=str(projects_dir))) == 2

    def test_missing_root(self, tmp_path):
        assert list_sessions(projects_path=str(tmp_path / 'none')) == []


def test_find_session_file(project_dir, projects_dir):
    write_entries(str(project_dir / 'wanted.jsonl'), assistant_text('x'))
    assert find_session_file('wanted', str(projects_dir)) == str(project_dir / 'wanted.jsonl')
    assert find_session_file('missing', str(projects_dir)) is None


def test_list_sessions_flags_waiting_prompt(projects_dir):
    write_entries(str(projects_dir / '-p' / 'q.jsonl'), assistant_text('Should I push the branch?'))
    write_entries(str(projects_dir / '-r' / 's.jsonl'), assistant_text('Pushed.'))
    by_id = {s.session_id: s for s in list_sessions(projects_path=str(projects_dir))}
    assert by_id['q'].waiting_prompt == 'Should I push the branch?'
    assert by_id['s'].waiting_prompt is None
