import logging
import os
import sys

import pytest

# Ensure we can import the package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from livequery.events import ChangeEvent
from livequery.exceptions import MergeConflict
from livequery.policies import (INSERT_AT_START, AppendOnInsert, CounterAggregate, Replace,
                                UpsertById)


def test_append_on_insert_caps_newest_first():
    policy = AppendOnInsert(max_size=2)
    snapshot = policy.empty()
    assert snapshot == ()

    snapshot = policy(snapshot, ChangeEvent.inserted({"id": "A"}))
    assert [row["id"] for row in snapshot] == ["A"]
    snapshot = policy(snapshot, ChangeEvent.inserted({"id": "B"}))
    assert [row["id"] for row in snapshot] == ["B", "A"]
    snapshot = policy(snapshot, ChangeEvent.inserted({"id": "C"}))
    assert [row["id"] for row in snapshot] == ["C", "B"]


def test_append_on_insert_ignores_updates_deletes_and_duplicates():
    policy = AppendOnInsert(max_size=5)
    snapshot = policy.initial([{"id": 1, "comment": "hi"}])

    assert policy(snapshot, ChangeEvent.updated({"id": 1, "comment": "edited"})) == snapshot
    assert policy(snapshot, ChangeEvent.deleted({"id": 1})) == snapshot
    assert policy(snapshot, ChangeEvent.inserted({"id": 1, "comment": "hi"})) == snapshot


def test_append_on_insert_rejects_zero_size():
    with pytest.raises(ValueError):
        AppendOnInsert(max_size=0)


def test_upsert_by_id_self_heals_missing_update():
    policy = UpsertById()
    snapshot = policy.initial([{"id": 1, "name": "x"}])

    snapshot = policy(snapshot, ChangeEvent.updated({"id": 1, "name": "y"}))
    assert list(snapshot) == [{"id": 1, "name": "y"}]

    snapshot = policy(snapshot, ChangeEvent.updated({"id": 2, "name": "z"}))
    assert list(snapshot) == [{"id": 1, "name": "y"}, {"id": 2, "name": "z"}]


def test_upsert_by_id_update_is_idempotent():
    policy = UpsertById()
    snapshot = policy.initial([{"id": 1, "name": "x"}, {"id": 2, "name": "w"}])
    event = ChangeEvent.updated({"id": 1, "name": "y"})

    once = policy(snapshot, event)
    twice = policy(once, event)
    assert once == twice
    assert [row["id"] for row in twice] == [1, 2]


def test_upsert_by_id_insert_position_and_delete():
    policy = UpsertById(insert_at=INSERT_AT_START)
    snapshot = policy.initial([{"id": 1}, {"id": 2}])

    snapshot = policy(snapshot, ChangeEvent.inserted({"id": 3}))
    assert [row["id"] for row in snapshot] == [3, 1, 2]

    snapshot = policy(snapshot, ChangeEvent.deleted({"id": 1}))
    assert [row["id"] for row in snapshot] == [3, 2]


def test_upsert_by_id_delete_of_absent_key_conflicts():
    policy = UpsertById()
    with pytest.raises(MergeConflict) as info:
        policy(policy.initial([{"id": 1}]), ChangeEvent.deleted({"id": 9}))
    assert info.value.key == 9


def test_upsert_by_id_does_not_mutate_previous_snapshot():
    policy = UpsertById()
    before = policy.initial([{"id": 1, "name": "x"}])
    after = policy(before, ChangeEvent.updated({"id": 1, "name": "y"}))
    assert before[0]["name"] == "x"
    assert after[0]["name"] == "y"


def test_counter_aggregate_counts_and_never_goes_negative(caplog):
    policy = CounterAggregate("gallery_id")
    snapshot = policy.initial([{"id": 1, "gallery_id": "g1"}, {"id": 2, "gallery_id": "g1"},
                               {"id": 3, "gallery_id": "g2"}])
    assert snapshot == {"g1": 2, "g2": 1}

    snapshot = policy(snapshot, ChangeEvent.inserted({"id": 4, "gallery_id": "g2"}))
    assert snapshot["g2"] == 2

    with caplog.at_level(logging.WARNING, logger="livequery.policies"):
        for _ in range(4):
            snapshot = policy(snapshot, ChangeEvent.deleted({"id": 5, "gallery_id": "g1"}))
            assert snapshot["g1"] >= 0
    assert snapshot["g1"] == 0
    assert "clamped" in caplog.text


def test_counter_aggregate_ignores_rows_without_key():
    policy = CounterAggregate("gallery_id")
    snapshot = policy(policy.empty(), ChangeEvent.deleted({"id": 7}))
    assert snapshot == {}


def test_replace_adopts_and_clears():
    policy = Replace()
    snapshot = policy.initial([{"id": 1, "site_name": "Old"}])
    assert snapshot == {"id": 1, "site_name": "Old"}

    snapshot = policy(snapshot, ChangeEvent.updated({"id": 1, "site_name": "New"}))
    assert snapshot["site_name"] == "New"
    assert policy(snapshot, ChangeEvent.deleted({"id": 1})) is None
    assert policy.empty() is None


def test_replace_refetch_flag():
    assert Replace(refetch=True).resync_on_event is True
    assert Replace().resync_on_event is False


def test_pending_matching_for_keyless_optimistic_rows():
    policy = AppendOnInsert(max_size=10)
    pending = ChangeEvent.inserted({"gallery_id": "g1", "name": "Ani", "comment": "Bagus"})
    confirmed = ChangeEvent.inserted({"id": 42, "gallery_id": "g1", "name": "Ani", "comment": "Bagus"})
    other = ChangeEvent.inserted({"id": 43, "gallery_id": "g1", "name": "Budi", "comment": "Bagus"})

    assert policy.matches(pending, confirmed)
    assert not policy.matches(pending, other)


def test_contains_reports_rows_held_by_the_snapshot():
    upsert = UpsertById()
    assert upsert.contains(upsert.initial([{"id": 1}, {"id": 2}]), 2)
    assert not upsert.contains(upsert.empty(), 2)

    append = AppendOnInsert(max_size=5)
    assert append.contains(append.initial([{"id": 7}]), 7)

    replace = Replace()
    assert replace.contains(replace.initial([{"id": 1}]), 1)
    assert not replace.contains(None, 1)

    assert not CounterAggregate("gallery_id").contains({"g1": 3}, "g1")
