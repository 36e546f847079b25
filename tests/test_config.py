from pathlib import Path

from taskplanner.config_loader import load_config


def test_defaults():
    config = load_config()

    assert config.lock.max_attempts == 50
    assert config.lock.retry_interval == 0.1
    assert config.lock.stale_after_seconds is None
    assert config.phases.clarify_marker_threshold == 3
    assert "explore" in config.phases.exempt_agents
    assert config.hooks.blocked_edit_tools == ["Edit", "Write", "MultiEdit", "NotebookEdit"]


def test_paths(tmp_path):
    config = load_config(tmp_path)
    state = config.state_path(tmp_path)

    assert state == tmp_path / ".taskplanner" / "state" / "active_task_graph.json"
    assert config.lock_path(state) == state.parent / ".task_graph.lock"
    assert config.log_dir(tmp_path) == tmp_path / ".taskplanner" / "logs"


def test_project_overrides_merge(tmp_path):
    (tmp_path / ".taskplanner").mkdir()
    (tmp_path / ".taskplanner" / "config.yaml").write_text(
        "lock:\n  max_attempts: 5\nphases:\n  clarify_marker_threshold: 0\n"
    )

    config = load_config(tmp_path)

    assert config.lock.max_attempts == 5
    assert config.lock.retry_interval == 0.1
    assert config.phases.clarify_marker_threshold == 0
    assert config.phases.exempt_skills


def test_session_dir_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("TASKPLANNER_SESSION_DIR", str(tmp_path / "s"))
    assert load_config().session_dir() == tmp_path / "s"


def test_session_dir_from_dotenv(tmp_path, monkeypatch):
    # Registered first so teardown removes whatever the .env file sets.
    monkeypatch.setenv("TASKPLANNER_SESSION_DIR", "unset")
    monkeypatch.delenv("TASKPLANNER_SESSION_DIR")
    (tmp_path / ".env").write_text(f"TASKPLANNER_SESSION_DIR={tmp_path / 'from-env'}\n")

    config = load_config(tmp_path)

    assert config.session_dir() == Path(tmp_path / "from-env")
