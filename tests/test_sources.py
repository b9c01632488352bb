import pytest
import yaml

from scourwatch.models import Source
from scourwatch.scour.reliability import SourceReliabilityTracker, disable_sources
from scourwatch.services.sources_service import (
    DBSourceRegistry,
    MemorySourceRegistry,
    SourceNotFound,
    import_sources_file,
    resolve_sources,
)
from scourwatch.storage import (
    get_source,
    init_db,
    kv_list_keys,
    kv_set,
    list_sources,
    upsert_source,
)

from scour_fakes import make_sources


def test_upsert_and_list_sources(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    with init_db(db_path) as conn:
        upsert_source(conn, {"id": "b", "url": "https://b.example.com/rss", "name": "B"})
        upsert_source(conn, {"id": "a", "url": "https://a.example.com", "type": "html", "enabled": False})
        upsert_source(conn, {"id": "b", "url": "https://b.example.com/feed", "trust_score": 0.8})

        assert [source.id for source in list_sources(conn, enabled_only=False)] == ["a", "b"]
        assert [source.id for source in list_sources(conn)] == ["b"]
        source = get_source(conn, "b")
        assert source.url == "https://b.example.com/feed"
        assert source.trust_score == 0.8

        with pytest.raises(ValueError):
            upsert_source(conn, {"id": "c", "url": "https://c.example.com", "trust_score": 2})


def test_kv_list_keys_filters_by_prefix(tmp_path):
    with init_db(str(tmp_path / "state.sqlite3")) as conn:
        kv_set(conn, "scour-job-1", "{}")
        kv_set(conn, "scour-job-2", "{}")
        kv_set(conn, "other", "{}")
        assert kv_list_keys(conn, "scour-job-") == ["scour-job-1", "scour-job-2"]


def test_import_sources_file_and_db_registry_patch(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    path = tmp_path / "sources.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "sources": [
                    {"id": "feed-1", "url": "https://one.example.com/rss"},
                    {"id": "page-1", "url": "https://two.example.com", "type": "html"},
                ]
            }
        ),
        encoding="utf-8",
    )

    assert import_sources_file(db_path, str(path)) == 2

    registry = DBSourceRegistry(db_path)
    patched = registry.patch_source("feed-1", {"enabled": False})
    assert patched.enabled is False
    assert [source.id for source in registry.list_sources()] == ["page-1"]
    with pytest.raises(SourceNotFound):
        registry.patch_source("ghost", {"enabled": False})
    with pytest.raises(ValueError):
        registry.patch_source("feed-1", {"url": "https://elsewhere"})


def test_resolve_sources_defaults_to_enabled_and_rejects_unknown():
    sources = make_sources(3)
    registry = MemorySourceRegistry(sources)
    registry.patch_source("src-02", {"enabled": False})

    assert [source.id for source in resolve_sources(registry, None)] == ["src-01", "src-03"]
    assert [source.id for source in resolve_sources(registry, ["src-02"])] == ["src-02"]
    with pytest.raises(ValueError, match="ghost"):
        resolve_sources(registry, ["src-01", "ghost"])


def test_tracker_disables_only_sources_without_success():
    tracker = SourceReliabilityTracker()
    tracker.record_error("flaky", 2)
    tracker.record_success("flaky")
    tracker.record_error("dead")
    tracker.record_success("healthy")

    assert tracker.disabled_source_ids() == ["dead"]
    assert tracker.errors_for("flaky") == 2
    assert tracker.successes_for("dead") == 0


class _PartlyBrokenRegistry(MemorySourceRegistry):
    def patch_source(self, source_id, fields):
        if source_id == "src-02":
            raise RuntimeError("write conflict")
        return super().patch_source(source_id, fields)


def test_disable_sources_isolates_failures():
    registry = _PartlyBrokenRegistry(make_sources(3))

    results = disable_sources(registry, ["src-01", "src-02", "src-03"])

    assert [(result.source_id, result.ok) for result in results] == [
        ("src-01", True),
        ("src-02", False),
        ("src-03", True),
    ]
    assert results[1].error == "write conflict"
    assert registry.get("src-01").enabled is False
    assert registry.get("src-02").enabled is True
    assert registry.get("src-03").enabled is False


def test_source_label_prefers_name():
    source = Source(id="x", url="https://x", type="rss", enabled=True, trust_score=0.5, last_scoured_at=None)
    assert source.label == "x"
    assert Source(**{**source.__dict__, "name": "X News"}).label == "X News"
