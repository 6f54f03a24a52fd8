import errno
import json
import os

import pytest

from coze.errors import HistoryLoadError, HistoryWriteError
from coze.history.store import Direction, HistoryStore


def _write_lines(path, *records):
    path.write_text("".join(json.dumps(r) + "\n" for r in records), encoding="utf-8")


def _record(entry_id, prompt="p", reply="r"):
    return {"id": entry_id, "timestamp": "2024-01-01T00:00:00.000+00:00", "prompt": prompt, "reply": reply}


def test_missing_file_is_empty_history(tmp_path):
    store = HistoryStore(str(tmp_path / "nope" / "history.jsonl"))
    assert len(store) == 0
    assert store.entries() == ()
    assert store.last() is None


def test_blank_lines_are_ignored(tmp_path):
    path = tmp_path / "history.jsonl"
    path.write_text("\n" + json.dumps(_record(1)) + "\n\n", encoding="utf-8")
    assert len(HistoryStore(str(path))) == 1


def test_append_persists_and_reopens(tmp_path):
    path = tmp_path / "sub" / "history.jsonl"
    store = HistoryStore(str(path))
    assert store.append("Hello", "world", "stub") == 1
    assert store.append("How are you?", "Fine, ünïcode too") == 2

    reopened = HistoryStore(str(path))
    assert [(e.id, e.prompt, e.reply) for e in reopened.entries()] == [
        (1, "Hello", "world"),
        (2, "How are you?", "Fine, ünïcode too"),
    ]
    assert reopened.get(0).model == "stub"
    assert reopened.get(1).model is None
    assert reopened.append("again", "yes") == 3


def test_ids_continue_after_gaps(tmp_path):
    path = tmp_path / "history.jsonl"
    _write_lines(path, _record(3), _record(10))
    store = HistoryStore(str(path))
    assert store.append("next", "one") == 11


def test_entry_fields_round_trip(tmp_path):
    path = tmp_path / "history.jsonl"
    store = HistoryStore(str(path))
    store.append("prompt", "reply", "model-a")
    raw = json.loads(path.read_text(encoding="utf-8").splitlines()[0])
    assert set(raw) == {"id", "timestamp", "prompt", "reply", "model"}
    assert "T" in raw["timestamp"]


@pytest.mark.parametrize(
    "content",
    [
        "not json\n",
        "[1, 2]\n",
        json.dumps({"id": 1, "prompt": "p", "reply": "r"}) + "\n",
        json.dumps({**_record(1), "id": "1"}) + "\n",
        json.dumps({**_record(1), "reply": None}) + "\n",
        json.dumps(_record(2)) + "\n" + json.dumps(_record(2)) + "\n",
        json.dumps(_record(5)) + "\n" + json.dumps(_record(4)) + "\n",
    ],
)
def test_corrupt_history_refuses_to_load(tmp_path, content):
    path = tmp_path / "history.jsonl"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(HistoryLoadError) as excinfo:
        HistoryStore(str(path))
    assert str(path) in str(excinfo.value)


def test_write_failure_leaves_store_unchanged(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory", encoding="utf-8")
    store = HistoryStore(str(blocker / "history.jsonl"))
    with pytest.raises(HistoryWriteError):
        store.append("Hello", "world")
    assert len(store) == 0


class TestNavigate:
    @pytest.fixture
    def store(self, tmp_path):
        store = HistoryStore(str(tmp_path / "history.jsonl"))
        for prompt in ("first", "second", "third"):
            store.append(prompt, "ok")
        return store

    def test_older_from_draft_is_newest(self, store):
        assert store.navigate(Direction.OLDER, None).prompt == "third"

    def test_walks_back_and_forth(self, store):
        assert store.navigate(Direction.OLDER, 2).prompt == "second"
        assert store.navigate(Direction.OLDER, 1).prompt == "first"
        assert store.navigate(Direction.NEWER, 0).prompt == "second"

    def test_stops_at_boundaries(self, store):
        assert store.navigate(Direction.OLDER, 0) is None
        assert store.navigate(Direction.NEWER, 2) is None
        assert store.navigate(Direction.NEWER, None) is None

    def test_out_of_range_positions_are_clamped(self, store):
        assert store.navigate(Direction.OLDER, 99).prompt == "third"
        assert store.navigate(Direction.NEWER, -5).prompt == "first"
        assert store.navigate(Direction.OLDER, -5) is None

    def test_empty_history(self, tmp_path):
        store = HistoryStore(str(tmp_path / "history.jsonl"))
        assert store.navigate(Direction.OLDER, None) is None
        assert store.navigate(Direction.NEWER, 0) is None


def test_failed_fsync_does_not_reuse_ids(tmp_path, monkeypatch):
    path = tmp_path / "history.jsonl"
    store = HistoryStore(str(path))
    assert store.append("first", "ok") == 1

    real_fsync = os.fsync
    calls = []

    def flaky_fsync(fd):
        calls.append(fd)
        if len(calls) == 1:
            raise OSError(errno.EIO, "I/O error")
        real_fsync(fd)

    monkeypatch.setattr(os, "fsync", flaky_fsync)
    with pytest.raises(HistoryWriteError):
        store.append("lost", "reply")
    assert [e.id for e in store.entries()] == [1]
    assert store.append("third", "ok") == 3

    reopened = HistoryStore(str(path))
    assert [(e.id, e.prompt) for e in reopened.entries()] == [(1, "first"), (3, "third")]
    assert len(path.read_text(encoding="utf-8").splitlines()) == 2
