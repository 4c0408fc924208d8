import asyncio
import json

import pytest

import recap_store
from recap_core import CardDraft, CompositionBuffer, EntryCardCache, StoreError
from recap_store import DiskStore, SessionStore, open_store, set_persistence_backend


def test_session_store_lists_newest_first_with_counts() -> None:
    store = SessionStore()
    first = asyncio.run(store.create_entry("One", "body"))
    second = asyncio.run(store.create_entry("Two", "body"))
    asyncio.run(store.create_cards(first.id, [CardDraft("Q1", "A1"), CardDraft("Q2", "A2")]))

    summaries = asyncio.run(store.list_entries_with_card_counts())
    assert [s.entry.id for s in summaries] == [second.id, first.id]
    assert [s.card_count for s in summaries] == [0, 2]


def test_cards_come_back_in_id_order() -> None:
    store = SessionStore()
    entry = asyncio.run(store.create_entry("One", "body"))
    asyncio.run(store.create_cards(entry.id, [CardDraft("Q1", "A1")]))
    asyncio.run(store.create_cards(entry.id, [CardDraft("Q2", "A2")]))
    cards = asyncio.run(store.list_cards_for_entry(entry.id))
    assert [c.question for c in cards] == ["Q1", "Q2"]
    assert cards[0].id < cards[1].id
    assert all(c.entry_id == entry.id for c in cards)


def test_create_cards_empty_is_noop_even_for_unknown_entry() -> None:
    store = SessionStore()
    asyncio.run(store.create_cards(42, []))
    with pytest.raises(StoreError):
        asyncio.run(store.create_cards(42, [CardDraft("Q", "A")]))


def test_get_entry_missing_returns_none() -> None:
    assert asyncio.run(SessionStore().get_entry(1)) is None


def test_disk_store_survives_reopen(tmp_path) -> None:
    path = tmp_path / "data" / "recap.json"
    store = DiskStore(path)
    entry = asyncio.run(store.create_entry("Persisted", "text"))
    asyncio.run(store.create_cards(entry.id, [CardDraft("Q", "A")]))

    reopened = DiskStore(path)
    assert asyncio.run(reopened.get_entry(entry.id)).title == "Persisted"
    assert [c.answer for c in asyncio.run(reopened.list_cards_for_entry(entry.id))] == ["A"]
    assert json.loads(path.read_text(encoding="utf-8"))["next_card_id"] == 2


def test_disk_store_reports_corrupt_file(tmp_path) -> None:
    path = tmp_path / "recap.json"
    path.write_text("{broken", encoding="utf-8")
    with pytest.raises(StoreError):
        asyncio.run(DiskStore(path).list_entries_with_card_counts())


def test_open_store_follows_backend(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(recap_store, "PERSISTENCE_BACKEND", "disk")
    assert isinstance(open_store(tmp_path / "x.json"), DiskStore)
    set_persistence_backend("SESSION")
    store = open_store()
    assert type(store) is SessionStore
    set_persistence_backend("floppy")
    assert recap_store.PERSISTENCE_BACKEND == "disk"


def test_compose_then_review_round_trip(tmp_path) -> None:
    store = DiskStore(tmp_path / "recap.json")
    buf = CompositionBuffer(store, title="Chapter 1", body="Notes")
    buf.import_json('{"questions":[{"question":"Q","options":{"a":"X","b":"Y"},"answer":"b"}]}')
    buf.add_draft("Skipped", "")
    entry = asyncio.run(buf.save())

    cache = EntryCardCache(store)
    summaries = asyncio.run(cache.list_summaries())
    assert summaries[0].card_count == 1
    assert asyncio.run(cache.toggle_expand(entry.id)) is True
    assert [c.answer for c in cache.cards_for(entry.id)] == ["b) Y"]
