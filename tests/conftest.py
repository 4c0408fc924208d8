from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from recap_core import Card, CardDraft, Entry, EntrySummary, StoreError  # noqa: E402


class FakeStore:
    """Scriptable CardStore double that records every call."""

    def __init__(self) -> None:
        self.entries: Dict[int, Entry] = {}
        self.cards: Dict[int, List[Card]] = {}
        self.calls: List[tuple] = []
        self.fail_fetch: int = 0
        self.fail_create_entry = False
        self.fail_create_cards = False
        self.gate: Optional[asyncio.Event] = None

    def add_entry(self, entry_id: int, title: str = "T", cards: Sequence[tuple] = ()) -> Entry:
        entry = Entry(id=entry_id, title=title, body="body", created_at=f"2024-01-{entry_id:02d}T00:00:00")
        self.entries[entry_id] = entry
        self.cards[entry_id] = [Card(id=cid, entry_id=entry_id, question=q, answer=a) for cid, q, a in cards]
        return entry

    def fetch_count(self, entry_id: int) -> int:
        return sum(1 for c in self.calls if c == ("list_cards_for_entry", entry_id))

    async def create_entry(self, title: str, body: str) -> Entry:
        self.calls.append(("create_entry", title, body))
        if self.fail_create_entry:
            raise StoreError("insert into entries failed")
        entry = Entry(id=len(self.entries) + 1, title=title, body=body, created_at="2024-02-01T00:00:00")
        self.entries[entry.id] = entry
        return entry

    async def create_cards(self, entry_id: int, drafts: Sequence[CardDraft]) -> None:
        self.calls.append(("create_cards", entry_id, [d.to_dict() for d in drafts]))
        if self.fail_create_cards:
            raise StoreError("insert into cards failed")
        rows = self.cards.setdefault(entry_id, [])
        for d in drafts:
            rows.append(Card(id=100 + len(rows), entry_id=entry_id, question=d.question, answer=d.answer))

    async def list_entries_with_card_counts(self) -> List[EntrySummary]:
        self.calls.append(("list_entries_with_card_counts",))
        ordered = sorted(self.entries.values(), key=lambda e: e.created_at, reverse=True)
        return [EntrySummary(entry=e, card_count=len(self.cards.get(e.id, []))) for e in ordered]

    async def list_cards_for_entry(self, entry_id: int) -> List[Card]:
        self.calls.append(("list_cards_for_entry", entry_id))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_fetch:
            self.fail_fetch -= 1
            raise StoreError("network down")
        return list(self.cards.get(entry_id, []))

    async def get_entry(self, entry_id: int) -> Optional[Entry]:
        self.calls.append(("get_entry", entry_id))
        return self.entries.get(entry_id)


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()
