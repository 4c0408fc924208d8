"""
recap_store.py — backing stores for Recap Journal

Persistence is selectable, same as the trainer it grew out of:
    - "disk":    entries + cards live in one JSON file (desktop)
    - "session": nothing touches the disk (Streamlit Cloud friendly)

Both backends expose the async CardStore interface from recap_core.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from json import JSONDecodeError
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from recap_core import Card, CardDraft, Entry, EntrySummary, StoreError

logger = logging.getLogger(__name__)


# ============================================================
# Paths / backend selection
# ============================================================
DATA_FILE = Path("recap_data.json")

PERSISTENCE_BACKEND = "disk"


def set_persistence_backend(mode: str) -> None:
    global PERSISTENCE_BACKEND
    m = str(mode or "").strip().lower()
    if m not in ("disk", "session"):
        m = "disk"
    PERSISTENCE_BACKEND = m


# ============================================================
# Helpers
# ============================================================
def now_iso() -> str:
    return datetime.now().isoformat(timespec="microseconds")


def safe_load_json(path: Path) -> Any:
    try:
        txt = path.read_text(encoding="utf-8")
    except Exception as e:
        raise ValueError(f"Failed reading {path}: {e}") from e
    try:
        return json.loads(txt)
    except JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path} (line {e.lineno}, col {e.colno}): {e.msg}") from e


def atomic_write_json(path: Path, data: Any, indent: int = 2) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=indent, ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)


def entry_from_dict(raw: Dict[str, Any]) -> Entry:
    return Entry(
        id=int(raw["id"]),
        title=str(raw.get("title", "")),
        body=str(raw.get("body", "")),
        created_at=str(raw.get("created_at", "")),
    )


def card_from_dict(raw: Dict[str, Any]) -> Card:
    created = raw.get("created_at")
    return Card(
        id=int(raw["id"]),
        entry_id=int(raw["entry_id"]),
        question=str(raw.get("question", "")),
        answer=str(raw.get("answer", "")),
        created_at=str(created) if created is not None else None,
    )


def empty_data() -> Dict[str, Any]:
    return {"entries": [], "cards": [], "next_entry_id": 1, "next_card_id": 1}


# ============================================================
# Session backend
# ============================================================
class SessionStore:
    """In-memory store. Rows are plain dicts, same shape as the JSON file."""

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._data = data if data is not None else empty_data()

    # Hooks for DiskStore
    def _read(self) -> Dict[str, Any]:
        return self._data

    def _write(self, data: Dict[str, Any]) -> None:
        self._data = data

    async def create_entry(self, title: str, body: str) -> Entry:
        data = self._read()
        row = {
            "id": int(data.get("next_entry_id", 1)),
            "title": title,
            "body": body,
            "created_at": now_iso(),
        }
        data.setdefault("entries", []).append(row)
        data["next_entry_id"] = row["id"] + 1
        self._write(data)
        logger.debug("Created entry %s", row["id"])
        return entry_from_dict(row)

    async def create_cards(self, entry_id: int, drafts: Sequence[CardDraft]) -> None:
        if not drafts:
            return
        data = self._read()
        if not any(int(e["id"]) == entry_id for e in data.get("entries", [])):
            raise StoreError(f"Cannot add cards: entry {entry_id} does not exist.")

        next_id = int(data.get("next_card_id", 1))
        stamp = now_iso()
        cards = data.setdefault("cards", [])
        for d in drafts:
            cards.append(
                {
                    "id": next_id,
                    "entry_id": entry_id,
                    "question": d.question,
                    "answer": d.answer,
                    "created_at": stamp,
                }
            )
            next_id += 1
        data["next_card_id"] = next_id
        self._write(data)

    async def list_entries_with_card_counts(self) -> List[EntrySummary]:
        data = self._read()
        counts: Dict[int, int] = {}
        for c in data.get("cards", []):
            k = int(c["entry_id"])
            counts[k] = counts.get(k, 0) + 1

        entries = [entry_from_dict(e) for e in data.get("entries", [])]
        entries.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return [EntrySummary(entry=e, card_count=counts.get(e.id, 0)) for e in entries]

    async def list_cards_for_entry(self, entry_id: int) -> List[Card]:
        data = self._read()
        cards = [card_from_dict(c) for c in data.get("cards", []) if int(c["entry_id"]) == entry_id]
        cards.sort(key=lambda c: c.id)
        return cards

    async def get_entry(self, entry_id: int) -> Optional[Entry]:
        for e in self._read().get("entries", []):
            if int(e["id"]) == entry_id:
                return entry_from_dict(e)
        return None


# ============================================================
# Disk backend
# ============================================================
class DiskStore(SessionStore):
    """JSON file store; every write replaces the file atomically."""

    def __init__(self, path: Union[Path, str] = DATA_FILE) -> None:
        self.path = Path(path)
        super().__init__(data=None)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return empty_data()
        try:
            data = safe_load_json(self.path)
        except ValueError as e:
            raise StoreError(str(e)) from e
        if not isinstance(data, dict):
            raise StoreError(f"{self.path} must hold a JSON object.")
        base = empty_data()
        base.update(data)
        return base

    def _write(self, data: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_json(self.path, data, indent=2)
        except OSError as e:
            raise StoreError(f"Failed writing {self.path}: {e}") from e


def open_store(path: Optional[Union[Path, str]] = None) -> SessionStore:
    if PERSISTENCE_BACKEND != "disk":
        return SessionStore()
    return DiskStore(path if path is not None else DATA_FILE)
