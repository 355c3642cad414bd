import pytest

from codedove.config import CodedoveConfig, get_config, set_config


@pytest.fixture
def projects_dir(tmp_path):
    path = tmp_path / 'projects'
    path.mkdir()
    return path


@pytest.fixture
def state_dir(tmp_path):
    path = tmp_path / 'state'
    path.mkdir()
    return path


@pytest.fixture(autouse=True)
def test_config(tmp_path, projects_dir, state_dir):
    """Point the global configuration at temporary directories with short timings"""
    previous = get_config()
    config = CodedoveConfig(
        projects_path=str(projects_dir),
        state_dir=str(state_dir),
        repos_folder=str(tmp_path / 'repos'),
        monitor_debounce=0.05,
        ping_after=60.0,
        completion_grace=0.05,
        rotation_poll_interval=0.05,
        rotation_poll_timeout=1.0,
        interrupt_settle=0.01,
    )
    set_config(config)
    yield config
    set_config(previous)


@pytest.fixture
def project_dir(projects_dir):
    """Transcript directory for the default test cwd"""
    from codedove.sessions import encode_project_dir
    from tests.helpers import DEFAULT_CWD

    path = projects_dir / encode_project_dir(DEFAULT_CWD)
    path.mkdir()
    return path
