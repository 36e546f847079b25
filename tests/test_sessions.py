from taskplanner.sessions import SessionRegistry


def _registry(tmp_path) -> SessionRegistry:
    return SessionRegistry(tmp_path / "sessions", max_attempts=50, retry_interval=0.01)


def test_registered_graph_wins_over_local_path(tmp_path):
    registry = _registry(tmp_path)
    owner = tmp_path / "owner" / "graph.json"
    owner.parent.mkdir()
    owner.write_text("{}")
    local = tmp_path / "elsewhere" / "graph.json"
    local.parent.mkdir()
    local.write_text("{}")

    registry.register_graph("sess-1", owner)

    assert registry.resolve_graph("sess-1", local) == owner.resolve()


def test_falls_back_to_local_path(tmp_path):
    registry = _registry(tmp_path)
    local = tmp_path / "graph.json"

    assert registry.resolve_graph("sess-1", local) is None
    local.write_text("{}")
    assert registry.resolve_graph("sess-1", local) == local
    assert registry.resolve_graph(None, local) == local


def test_stale_mapping_is_ignored(tmp_path):
    registry = _registry(tmp_path)
    gone = tmp_path / "gone.json"
    gone.write_text("{}")
    registry.register_graph("sess-1", gone)
    gone.unlink()

    assert registry.resolve_graph("sess-1", tmp_path / "missing.json") is None


def test_subagent_markers_count(tmp_path):
    registry = _registry(tmp_path)
    assert not registry.is_subagent("sess-1")

    registry.subagent_started("sess-1")
    registry.subagent_started("sess-1")
    assert registry.subagent_finished("sess-1") == 1
    assert registry.is_subagent("sess-1")

    registry.subagent_finished("sess-1")
    registry.subagent_finished("sess-1")
    assert not registry.is_subagent("sess-1")


def test_session_ids_are_sanitized(tmp_path):
    registry = _registry(tmp_path)
    registry.subagent_started("../../etc/passwd")

    files = [p.name for p in (tmp_path / "sessions").iterdir()]
    assert all("/" not in name for name in files)
    assert registry.is_subagent("../../etc/passwd")

    registry.clear("../../etc/passwd")
    assert not registry.is_subagent("../../etc/passwd")
