"""
Tests for sanimem.session — session stores and transcript snippets.

Invariants tested:
- S1: update_entry creates missing records and preserves unrelated keys
- S2: get() returns copies; callers cannot mutate the store
- S3: JsonSessionStore persists across instances and survives concurrent updates
- S4: Snippets are the last N non-empty messages, oldest first, clipped
- S5: A corrupt store file is never overwritten by an update
"""

import json
import threading

import pytest

from sanimem.session import (
    InMemorySessionStore,
    JsonSessionStore,
    SessionStoreError,
    collect_text,
    read_recent_snippets,
    resolve_session_id,
)


@pytest.fixture(params=["memory", "json"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemorySessionStore()
    return JsonSessionStore(tmp_path / "sessions.json")


class TestStoreContract:
    def test_missing_is_none(self, any_store):
        assert any_store.get("nope") is None

    def test_update_creates(self, any_store):
        record = any_store.update_entry("k", lambda r: r.update(saniMode=True))
        assert record == {"saniMode": True}
        assert any_store.get("k") == {"saniMode": True}

    def test_preserves_other_keys(self, any_store):
        any_store.update_entry("k", lambda r: r.update(channel="slack", sessionId="s1"))
        any_store.update_entry("k", lambda r: r.update(saniMode=True))
        assert any_store.get("k") == {"channel": "slack", "sessionId": "s1", "saniMode": True}

    def test_get_returns_copy(self, any_store):
        any_store.update_entry("k", lambda r: r.update(tags=["a"]))
        got = any_store.get("k")
        got["tags"].append("b")
        assert any_store.get("k") == {"tags": ["a"]}


class TestJsonStore:
    def test_persists(self, tmp_path):
        path = tmp_path / "nested" / "sessions.json"
        JsonSessionStore(path).update_entry("k", lambda r: r.update(x=1))
        assert JsonSessionStore(path).get("k") == {"x": 1}
        assert json.loads(path.read_text(encoding="utf-8")) == {"k": {"x": 1}}
        assert not (tmp_path / "nested" / "sessions.json.tmp").exists()

    def test_unreadable_file_is_empty(self, tmp_path, caplog):
        path = tmp_path / "sessions.json"
        path.write_text("{not json", encoding="utf-8")
        with caplog.at_level("WARNING", logger="sanimem.session"):
            assert JsonSessionStore(path).load() == {}
        assert "unreadable" in caplog.text

    def test_non_dict_record_ignored(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text(json.dumps({"k": "string"}), encoding="utf-8")
        store = JsonSessionStore(path)
        assert store.get("k") is None
        assert store.update_entry("k", lambda r: r.update(a=1)) == {"a": 1}

    @pytest.mark.parametrize("raw", ['{"keep-me": {"saniMode": tru', "[1, 2]"])
    def test_update_refuses_corrupt_store(self, tmp_path, raw):
        path = tmp_path / "sessions.json"
        path.write_text(raw, encoding="utf-8")
        store = JsonSessionStore(path)
        with pytest.raises(SessionStoreError, match="unreadable"):
            store.update_entry("k", lambda r: r.update(a=1))
        assert path.read_text(encoding="utf-8") == raw
        assert not (tmp_path / "sessions.json.tmp").exists()

    def test_concurrent_updates(self, tmp_path):
        store = JsonSessionStore(tmp_path / "sessions.json")

        def bump(record):
            record["n"] = record.get("n", 0) + 1

        def worker():
            for _ in range(10):
                JsonSessionStore(store.path).update_entry("k", bump)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.get("k") == {"n": 40}


class TestResolveSessionId:
    def test_prefers_record(self):
        assert resolve_session_id({"sessionId": " abc "}, "key") == "abc"

    @pytest.mark.parametrize("record", [None, {}, {"sessionId": ""}, {"sessionId": 3}])
    def test_falls_back_to_key(self, record):
        assert resolve_session_id(record, "key") == "key"


def _write_transcript(path, events):
    path.write_text("\n".join(json.dumps(e) for e in events) + "\n", encoding="utf-8")


class TestSnippets:
    def test_last_n_oldest_first(self, tmp_path):
        f = tmp_path / "t.jsonl"
        _write_transcript(f, [
            {"type": "message", "message": {"role": "user", "content": f"m{i}"}}
            for i in range(5)
        ])
        snippets = read_recent_snippets(f, limit=3)
        assert [s["text"] for s in snippets] == ["m2", "m3", "m4"]
        assert snippets[0]["role"] == "user"

    def test_skips_empty_and_garbage(self, tmp_path):
        f = tmp_path / "t.jsonl"
        f.write_text("\n".join([
            json.dumps({"role": "user", "content": "kept"}),
            "not json",
            json.dumps([1, 2]),
            json.dumps({"message": {"role": "assistant", "content": []}}),
            json.dumps({"message": {"content": "no role"}}),
        ]), encoding="utf-8")
        snippets = read_recent_snippets(f)
        assert snippets == [
            {"role": "user", "text": "kept"},
            {"role": "unknown", "text": "no role"},
        ]

    def test_clipped_with_floor(self, tmp_path):
        f = tmp_path / "t.jsonl"
        _write_transcript(f, [{"role": "user", "content": "y" * 300}])
        [snippet] = read_recent_snippets(f, max_chars=10)
        assert snippet["text"] == "y" * 120 + "…"

    def test_missing_file(self, tmp_path):
        assert read_recent_snippets(tmp_path / "missing.jsonl") == []
        assert read_recent_snippets(None) == []

    def test_collect_text_shapes(self):
        assert collect_text("plain") == "plain"
        assert collect_text([{"type": "text", "text": "a"}, {"text": "b"}]) == "ab"
        assert collect_text({"content": [{"text": "c"}]}) == "c"
        assert collect_text({"message": {"content": "d"}}) == "d"
        assert collect_text(None) == ""
