"""Tests for the Repository pattern."""

from __future__ import annotations

import sqlite3

import pytest

from anvil.db.models import Message, Session
from anvil.db.repository import Repository
from anvil.db.vectors import VEC_CHUNKS, VEC_MESSAGES, ensure_vec_index

EMB = [0.1, 0.2, 0.3, 0.4]


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


def _insert(repo, content="hello world", checksum="cs-1", path="a.rs", page=None, emb=EMB):
    return repo.insert_chunk(content, checksum, emb, path, page)


def _message(id="m1", session_id="s1", role="user", text="hi", emb=None):
    return Message(
        id=id,
        session_id=session_id,
        role=role,
        content={"role": role, "content": text},
        embedding=emb,
    )


# ------------------------------------------------------------------
# Chunks
# ------------------------------------------------------------------

def test_insert_chunk_returns_id(repo):
    chunk_id = _insert(repo)
    assert isinstance(chunk_id, int)
    chunk = repo.get_chunk(chunk_id)
    assert chunk.content == "hello world"
    assert chunk.source_path == "a.rs"
    assert chunk.embedding == pytest.approx(EMB)


def test_insert_chunk_duplicate_checksum_returns_none(repo):
    _insert(repo)
    assert _insert(repo, content="other") is None
    assert repo.count_chunks() == 1


def test_get_chunk_not_found(repo):
    assert repo.get_chunk(999) is None
    assert repo.get_chunk_by_checksum("nope") is None


def test_existing_checksums(repo):
    _insert(repo, checksum="a")
    _insert(repo, checksum="b")
    assert repo.existing_checksums(["a", "c", "b", "a"]) == {"a", "b"}
    assert repo.existing_checksums([]) == set()


def test_chunk_ids_for_checksums(repo):
    first = _insert(repo, checksum="a")
    second = _insert(repo, checksum="b")
    assert repo.chunk_ids_for_checksums(["b", "zzz", "a"]) == {first: "a", second: "b"}
    assert repo.chunk_ids_for_checksums([]) == {}


def test_stale_chunk_ids(repo):
    keep = _insert(repo, checksum="keep", path="x.rs")
    stale = _insert(repo, checksum="stale", path="x.rs")
    assert repo.stale_chunk_ids("x.rs", {"keep"}) == [stale]
    assert keep not in repo.stale_chunk_ids("x.rs", {"keep"})


def test_stale_chunk_ids_follow_linked_sources(repo):
    shared = _insert(repo, checksum="shared", path="a.rs")
    repo.link_source("b.rs", [shared])
    assert repo.stale_chunk_ids("b.rs", ()) == [shared]
    assert repo.stale_chunk_ids("b.rs", {"shared"}) == []


def test_release_source_hands_shared_chunk_to_other_file(repo):
    shared = _insert(repo, checksum="shared", path="a.rs")
    only_a = _insert(repo, checksum="only-a", path="a.rs")
    repo.link_source("b.rs", [shared])

    assert repo.release_source("a.rs", [shared, only_a]) == [only_a]
    assert repo.get_chunk(shared).source_path == "b.rs"
    assert repo.list_sources() == [("b.rs", 1)]


def test_release_source_empty(repo):
    assert repo.release_source("a.rs", []) == []


def test_delete_chunks_removes_tags_links_and_vec_rows(repo, tmp_db):
    ensure_vec_index(tmp_db, VEC_CHUNKS, 4, "cosine")
    chunk_id = _insert(repo)
    repo.link_tags(chunk_id, repo.ensure_tags(["rust"]))
    repo.index_rows(VEC_CHUNKS, [chunk_id])

    assert repo.delete_chunks([chunk_id]) == 1
    assert repo.get_chunk(chunk_id) is None
    assert tmp_db.execute("SELECT COUNT(*) FROM chunk_tags").fetchone()[0] == 0
    assert tmp_db.execute(f"SELECT COUNT(*) FROM {VEC_CHUNKS}").fetchone()[0] == 0


def test_list_sources(repo):
    _insert(repo, checksum="a", path="b.rs")
    _insert(repo, checksum="b", path="a.rs")
    _insert(repo, checksum="c", path="a.rs")
    _insert(repo, checksum="d", path=None)
    assert repo.list_sources() == [("a.rs", 2), ("b.rs", 1)]


# ------------------------------------------------------------------
# Tags
# ------------------------------------------------------------------

def test_ensure_tags_is_idempotent(repo):
    first = repo.ensure_tags(["rust", "docs"])
    second = repo.ensure_tags(["docs", "rust"])
    assert sorted(first) == sorted(second)
    assert repo.list_tags() == ["docs", "rust"]


def test_tags_for_chunks_sorted(repo):
    chunk_id = _insert(repo)
    repo.link_tags(chunk_id, repo.ensure_tags(["zeta", "alpha"]))
    repo.link_tags(chunk_id, repo.ensure_tags(["alpha"]))
    assert repo.tags_for_chunks([chunk_id]) == {chunk_id: ["alpha", "zeta"]}


def test_delete_unreferenced_tags(repo):
    chunk_id = _insert(repo)
    repo.link_tags(chunk_id, repo.ensure_tags(["used"]))
    repo.ensure_tags(["orphan"])
    assert repo.delete_unreferenced_tags() == 1
    assert repo.list_tags() == ["used"]


# ------------------------------------------------------------------
# Exact scan and index bookkeeping
# ------------------------------------------------------------------

def test_scan_chunks_orders_by_distance(repo):
    near = _insert(repo, checksum="near", emb=[1.0, 0.0, 0.0, 0.0])
    far = _insert(repo, checksum="far", emb=[0.0, 1.0, 0.0, 0.0])
    hits = repo.scan_chunks([1.0, 0.1, 0.0, 0.0], "vec_distance_cosine", 10)
    assert [i for i, _ in hits] == [near, far]


def test_scan_chunks_tag_filter(repo):
    tagged = _insert(repo, checksum="t", emb=[0.0, 1.0, 0.0, 0.0])
    _insert(repo, checksum="u", emb=[1.0, 0.0, 0.0, 0.0])
    repo.link_tags(tagged, repo.ensure_tags(["rust"]))
    hits = repo.scan_chunks([1.0, 0.0, 0.0, 0.0], "vec_distance_cosine", 10, tags=["rust"])
    assert [i for i, _ in hits] == [tagged]


def test_pending_and_index_rows(repo, tmp_db):
    ensure_vec_index(tmp_db, VEC_CHUNKS, 4, "l2")
    a = _insert(repo, checksum="a")
    b = _insert(repo, checksum="b")
    assert repo.pending_index_rows(VEC_CHUNKS) == [a, b]
    assert repo.count_unindexed(VEC_CHUNKS) == 2

    assert repo.index_rows(VEC_CHUNKS, [a, b, 999]) == 2
    assert repo.pending_index_rows(VEC_CHUNKS) == []
    # already indexed rows are skipped
    assert repo.index_rows(VEC_CHUNKS, [a]) == 0

    hits = repo.search_index(VEC_CHUNKS, EMB, 5)
    assert {key for key, _ in hits} == {a, b}


def test_search_index_returns_k_nearest_in_order(repo, tmp_db):
    ensure_vec_index(tmp_db, VEC_CHUNKS, 4, "l2")
    ids = [
        _insert(repo, checksum=f"c{i}", emb=[float(i), 0.0, 0.0, 0.0]) for i in range(4)
    ]
    repo.index_rows(VEC_CHUNKS, ids)

    hits = repo.search_index(VEC_CHUNKS, [2.9, 0.0, 0.0, 0.0], 2)
    assert [key for key, _ in hits] == [ids[3], ids[2]]
    assert hits[0][1] < hits[1][1]


# ------------------------------------------------------------------
# Sessions and messages
# ------------------------------------------------------------------

def test_add_and_get_session(repo):
    repo.add_session(Session(id="s1", config={"model": "x"}))
    session = repo.get_session("s1")
    assert session.config == {"model": "x"}
    assert session.summary is None
    assert session.started_at is not None


def test_update_summary(repo):
    repo.add_session(Session(id="s1"))
    repo.update_summary("s1", "short summary")
    assert repo.get_session("s1").summary == "short summary"


def test_add_messages_preserves_order(repo):
    repo.add_session(Session(id="s1"))
    repo.add_messages(
        [
            _message("m1", text="first"),
            _message("m2", role="assistant", text="second"),
            _message("m3", text="third", emb=EMB),
        ]
    )
    messages = repo.list_messages("s1")
    assert [m.id for m in messages] == ["m1", "m2", "m3"]
    assert messages[1].content == {"role": "assistant", "content": "second"}
    assert messages[0].embedding is None
    assert messages[2].embedding == pytest.approx(EMB)
    assert repo.count_messages() == 3


def test_add_messages_is_atomic(repo):
    repo.add_session(Session(id="s1"))
    with pytest.raises(sqlite3.IntegrityError):
        repo.add_messages([_message("m1"), _message("m1")])
    assert repo.list_messages("s1") == []


def test_delete_session_cascades_messages(repo, tmp_db):
    ensure_vec_index(tmp_db, VEC_MESSAGES, 4, "cosine")
    repo.add_session(Session(id="s1"))
    keys = repo.add_messages([_message("m1", emb=EMB)])
    repo.index_rows(VEC_MESSAGES, keys)

    repo.delete_session("s1")
    assert repo.get_session("s1") is None
    assert repo.count_messages() == 0
    assert tmp_db.execute(f"SELECT COUNT(*) FROM {VEC_MESSAGES}").fetchone()[0] == 0


def test_scan_messages_filters_by_session(repo):
    repo.add_session(Session(id="s1"))
    repo.add_session(Session(id="s2"))
    repo.add_messages([_message("a", "s1", emb=[1.0, 0.0, 0.0, 0.0])])
    repo.add_messages([_message("b", "s2", emb=[1.0, 0.0, 0.0, 0.0])])
    repo.add_messages([_message("c", "s1")])  # no embedding, never scanned

    hits = repo.scan_messages([1.0, 0.0, 0.0, 0.0], "vec_distance_l2", 10, session_id="s1")
    found = repo.get_messages_by_rowid([key for key, _ in hits])
    assert [m.id for m in found.values()] == ["a"]


def test_message_rejects_unknown_role():
    with pytest.raises(ValueError, match="role must be one of"):
        _message(role="robot")
