import json

import pytest

from models.checkpoint import CheckpointFormatError, CheckpointSnapshot, CheckpointStore
from models.domain import Stage
from models.schemas import FlaggedBrand, KeywordRecord, PipelineContext


def make_context() -> PipelineContext:
    return PipelineContext(
        brands=[FlaggedBrand(name="Kids&Us", short_name="Kids&Us", domain="kidsandus.es")],
        custom_keywords=["english for kids"],
    )


def test_missing_file_is_empty_checkpoint(tmp_path):
    store = CheckpointStore(tmp_path / "missing.json")

    snapshot = store.load()

    assert snapshot.completed_stages() == []
    assert not (tmp_path / "missing.json").exists()


def test_disabled_store_never_touches_disk(tmp_path):
    store = CheckpointStore()
    snapshot = CheckpointSnapshot()
    snapshot.set(Stage.CONTEXT, make_context())

    store.save(snapshot)

    assert store.enabled is False
    assert store.load().completed_stages() == []


def test_corrupt_file_raises_format_error(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(CheckpointFormatError, match="Invalid checkpoint format"):
        CheckpointStore(path).load()


def test_non_object_root_raises_format_error(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")

    with pytest.raises(CheckpointFormatError):
        CheckpointStore(path).load()


def test_unknown_stage_key_raises_format_error(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text(json.dumps({"somethingElse": []}), encoding="utf-8")

    with pytest.raises(CheckpointFormatError):
        CheckpointStore(path).load()


def test_round_trip_uses_stage_keys(tmp_path):
    path = tmp_path / "nested" / "cache.json"
    store = CheckpointStore(path)
    snapshot = CheckpointSnapshot()
    snapshot.set(Stage.CONTEXT, make_context())
    snapshot.set(Stage.KEYWORDS, [KeywordRecord(keyword="kids english", avg_monthly_searches=90, search_volume=[1, 2])])

    store.save(snapshot)

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert list(raw) == ["context", "keywordRecords"]
    assert raw["keywordRecords"][0]["avgMonthlySearches"] == 90
    assert raw["context"]["brands"][0]["shortName"] == "Kids&Us"

    loaded = store.load()
    assert loaded.completed_stages() == [Stage.CONTEXT, Stage.KEYWORDS]
    assert loaded.get(Stage.CONTEXT) == make_context()
    assert loaded.get(Stage.KEYWORDS)[0].keyword == "kids english"
    assert not loaded.has(Stage.AUDIT)


def test_save_leaves_no_temp_files(tmp_path):
    store = CheckpointStore(tmp_path / "cache.json")
    snapshot = CheckpointSnapshot()
    snapshot.set(Stage.CONTEXT, make_context())

    store.save(snapshot)
    store.save(snapshot)

    assert sorted(p.name for p in tmp_path.iterdir()) == ["cache.json"]


def test_clear_resets_to_empty_object(tmp_path):
    path = tmp_path / "cache.json"
    store = CheckpointStore(path)
    snapshot = CheckpointSnapshot()
    snapshot.set(Stage.CONTEXT, make_context())
    store.save(snapshot)

    store.clear()

    assert json.loads(path.read_text(encoding="utf-8")) == {}
    assert store.load().completed_stages() == []


def test_clear_missing_file_is_noop(tmp_path):
    CheckpointStore(tmp_path / "missing.json").clear()

    assert not (tmp_path / "missing.json").exists()
