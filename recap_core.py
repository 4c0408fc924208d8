"""
recap_core.py — Recap Journal core

What lives here:
- Entry / Card / CardDraft records and the error taxonomy.
- normalize_import(): loose question JSON -> validated card drafts.
- ReviewEngine: flip / next / prev for one chapter's cards.
- EntryCardCache: lazy entry -> cards cache with expand/collapse.
- CompositionBuffer: the draft being written, saved to the store in one go.

This file intentionally does NOT import Streamlit.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from json import JSONDecodeError
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple

logger = logging.getLogger(__name__)


# ============================================================
# Constants / Defaults
# ============================================================
UNKNOWN_QUESTION = "Unknown Question"
NO_ANSWER = "No answer provided"

# Pause between hiding the revealed face and moving the cursor.
SETTLE_DELAY_SEC = 0.15

DIRECTIONS = {
    "next": +1,
    "prev": -1,
}

# Command stream understood by ReviewEngine.handle()
REVEAL = "reveal"
COMMANDS = (REVEAL, "next", "prev")

KEY_BINDINGS = {
    "Space": REVEAL,
    "ArrowRight": "next",
    "ArrowLeft": "prev",
}
# A browser host must preventDefault() on these so the page does not scroll.
KEYS_SUPPRESS_DEFAULT = frozenset({"Space"})

DRAFT_FIELDS = ("question", "answer")


# ============================================================
# Errors
# ============================================================
MALFORMED_INPUT = "MalformedInput"
MISSING_FIELD = "MissingField"
EMPTY_FIELD = "EmptyField"


class RecapError(Exception):
    """Base class for every recoverable failure raised by the core."""


class ValidationError(RecapError):
    """User-correctable input problem (empty title, bad import document...)."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class StoreError(RecapError):
    """The backing store failed.

    After a partial save, ``entry`` holds the Entry that was written even
    though its cards were not.
    """

    def __init__(self, message: str, *, entry: Optional["Entry"] = None) -> None:
        super().__init__(message)
        self.entry = entry


class NotFoundError(RecapError):
    def __init__(self, entry_id: Any) -> None:
        super().__init__(f"Entry {entry_id} not found.")
        self.entry_id = entry_id


# ============================================================
# Records
# ============================================================
@dataclass(frozen=True)
class Entry:
    id: int
    title: str
    body: str
    created_at: str


@dataclass(frozen=True)
class Card:
    id: int
    entry_id: int
    question: str
    answer: str
    created_at: Optional[str] = None


@dataclass(frozen=True)
class CardDraft:
    question: str = ""
    answer: str = ""

    def is_complete(self) -> bool:
        return bool(self.question.strip()) and bool(self.answer.strip())

    def to_dict(self) -> Dict[str, str]:
        return {"question": self.question, "answer": self.answer}


@dataclass(frozen=True)
class EntrySummary:
    """Entry plus its card count, from the lightweight listing query."""

    entry: Entry
    card_count: int


@dataclass(frozen=True)
class ChapterCacheEntry:
    entry_id: int
    loaded: bool
    cards: Tuple[Card, ...] = ()
    expanded: bool = False


@dataclass(frozen=True)
class ReviewCursor:
    index: int = 0
    revealed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "revealed": self.revealed}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ReviewCursor":
        try:
            index = int(raw.get("index", 0))
        except (TypeError, ValueError):
            index = 0
        return cls(index=max(0, index), revealed=bool(raw.get("revealed", False)))


class CardStore(Protocol):
    """What the core needs from the persistence backend."""

    async def create_entry(self, title: str, body: str) -> Entry: ...

    async def create_cards(self, entry_id: int, drafts: Sequence[CardDraft]) -> None: ...

    async def list_entries_with_card_counts(self) -> List[EntrySummary]: ...

    async def list_cards_for_entry(self, entry_id: int) -> List[Card]: ...

    async def get_entry(self, entry_id: int) -> Optional[Entry]: ...


# ============================================================
# Import normalizer
# ============================================================
def _text_or(value: Any, placeholder: str) -> str:
    if value is None or isinstance(value, bool):
        return placeholder
    text = str(value)
    return text if text.strip() else placeholder


def _answer_text(item: Dict[str, Any]) -> str:
    answer = item.get("answer")
    options = item.get("options")

    # Multiple choice: {"options": {"a": "...", "b": "..."}, "answer": "b"} -> "b) ..."
    if isinstance(options, dict) and answer is not None and not isinstance(answer, (bool, dict, list)):
        key = str(answer)
        option = options.get(key)
        if option is not None and str(option).strip():
            return f"{key}) {option}"

    return _text_or(answer, NO_ANSWER)


def normalize_import(raw_text: str) -> List[CardDraft]:
    """
    Parse pasted question JSON into card drafts.

    Expected shape:
      {"questions": [{"question": str?, "answer": str?, "options": {key: text}?}, ...]}

    Only the document structure can fail (MalformedInput / MissingField);
    individual questions never fail, they fall back to placeholder text.
    """
    try:
        data = json.loads(raw_text or "")
    except JSONDecodeError as e:
        raise ValidationError(
            MALFORMED_INPUT,
            f"Invalid JSON format (line {e.lineno}, col {e.colno}): {e.msg}",
        ) from e
    except RecursionError as e:
        raise ValidationError(MALFORMED_INPUT, "Invalid JSON format: document is nested too deeply.") from e

    questions = data.get("questions") if isinstance(data, dict) else None
    if not isinstance(questions, list):
        raise ValidationError(MISSING_FIELD, "JSON must contain a 'questions' array.")

    drafts: List[CardDraft] = []
    for item in questions:
        if not isinstance(item, dict):
            item = {}
        drafts.append(
            CardDraft(
                question=_text_or(item.get("question"), UNKNOWN_QUESTION),
                answer=_answer_text(item),
            )
        )
    return drafts


# ============================================================
# Review state machine
# ============================================================
def flip_cursor(cursor: ReviewCursor, length: int) -> ReviewCursor:
    if length <= 0:
        return cursor
    return replace(cursor, revealed=not cursor.revealed)


def hide_face(cursor: ReviewCursor) -> ReviewCursor:
    return replace(cursor, revealed=False)


def step_cursor(cursor: ReviewCursor, length: int, direction: str) -> ReviewCursor:
    """Move one card in `direction`, wrapping both ways. Always lands face down."""
    if direction not in DIRECTIONS:
        raise ValueError(f"Unknown direction: {direction!r}")
    if length <= 0:
        return ReviewCursor()
    index = (cursor.index + DIRECTIONS[direction]) % length
    return ReviewCursor(index=index, revealed=False)


Sleeper = Callable[[float], Awaitable[Any]]


class ReviewEngine:
    """
    Reveal / navigate controller for one chapter's ordered cards.

    advance() is two-phase: begin_advance() hides the face right away, and
    settle() moves the cursor once the hide has finished. Between the two,
    flip and advance input is ignored.
    """

    def __init__(
        self,
        cards: Sequence[Card] = (),
        *,
        settle_delay: float = SETTLE_DELAY_SEC,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.settle_delay = settle_delay
        self._sleep = sleep
        self._cards: Tuple[Card, ...] = ()
        self._cursor = ReviewCursor()
        self._pending: Optional[str] = None
        self._generation = 0
        self.reset(cards)

    # ---- state ----
    @property
    def cards(self) -> Tuple[Card, ...]:
        return self._cards

    @property
    def cursor(self) -> ReviewCursor:
        return self._cursor

    @property
    def revealed(self) -> bool:
        return self._cursor.revealed

    @property
    def settling(self) -> bool:
        return self._pending is not None

    def current_card(self) -> Optional[Card]:
        if not self._cards:
            return None
        return self._cards[self._cursor.index]

    def position_label(self) -> str:
        if not self._cards:
            return "No cards"
        return f"Card {self._cursor.index + 1} / {len(self._cards)}"

    # ---- transitions ----
    def reset(self, cards: Sequence[Card]) -> None:
        self._cards = tuple(cards)
        self._cursor = ReviewCursor()
        self._pending = None
        self._generation += 1

    def flip(self) -> bool:
        if self._pending is None:
            self._cursor = flip_cursor(self._cursor, len(self._cards))
        return self._cursor.revealed

    def begin_advance(self, direction: str) -> bool:
        if direction not in DIRECTIONS:
            raise ValueError(f"Unknown direction: {direction!r}")
        if not self._cards or self._pending is not None:
            return False
        self._cursor = hide_face(self._cursor)
        self._pending = direction
        return True

    def settle(self) -> Optional[Card]:
        if self._pending is not None:
            self._cursor = step_cursor(self._cursor, len(self._cards), self._pending)
            self._pending = None
        return self.current_card()

    async def advance(self, direction: str) -> Optional[Card]:
        if not self.begin_advance(direction):
            return self.current_card()
        generation = self._generation
        try:
            await self._sleep(self.settle_delay)
        except BaseException:
            # interrupted mid-settle: drop the step so input is accepted again
            if generation == self._generation:
                self._pending = None
            raise
        if generation != self._generation:
            # reset() to a new chapter while settling; the step belonged to the old cards
            return self.current_card()
        return self.settle()

    # ---- input ----
    async def handle(self, command: str) -> Optional[Card]:
        if command == REVEAL:
            self.flip()
            return self.current_card()
        if command in DIRECTIONS:
            return await self.advance(command)
        raise ValueError(f"Unknown review command: {command!r}")

    async def handle_key(self, key: str) -> Optional[Card]:
        command = KEY_BINDINGS.get(key)
        if command is None or not self._cards:
            return self.current_card()
        return await self.handle(command)


# ============================================================
# Entry -> cards cache
# ============================================================
class EntryCardCache:
    """
    Session-scoped cache of each entry's cards plus which entries are expanded.

    Cards are fetched the first time an entry is expanded and kept for the
    life of the cache, including across collapse / expand cycles.
    """

    def __init__(self, store: CardStore) -> None:
        self._store = store
        self._chapters: Dict[int, ChapterCacheEntry] = {}
        # entry id -> token of the toggle currently waiting to expand it
        self._pending: Dict[int, object] = {}
        self._inflight: Dict[int, "asyncio.Future[Tuple[Card, ...]]"] = {}

    # ---- listing ----
    async def list_summaries(self) -> List[EntrySummary]:
        return list(await self._store.list_entries_with_card_counts())

    async def list_entries(self) -> List[Entry]:
        return [summary.entry for summary in await self.list_summaries()]

    async def read_entry(self, entry_id: int) -> Entry:
        entry = await self._store.get_entry(entry_id)
        if entry is None:
            raise NotFoundError(entry_id)
        return entry

    # ---- read-only views ----
    def chapter(self, entry_id: int) -> Optional[ChapterCacheEntry]:
        return self._chapters.get(entry_id)

    def cards_for(self, entry_id: int) -> Tuple[Card, ...]:
        chapter = self._chapters.get(entry_id)
        return chapter.cards if chapter is not None else ()

    def is_expanded(self, entry_id: int) -> bool:
        chapter = self._chapters.get(entry_id)
        return chapter is not None and chapter.expanded

    def is_loading(self, entry_id: int) -> bool:
        return entry_id in self._pending

    def expanded_ids(self) -> Set[int]:
        return {entry_id for entry_id, chapter in self._chapters.items() if chapter.expanded}

    def snapshot(self) -> Dict[str, List[int]]:
        return {
            "expanded": sorted(self.expanded_ids()),
            "loaded": sorted(entry_id for entry_id, chapter in self._chapters.items() if chapter.loaded),
            "pending": sorted(self._pending),
        }

    # ---- expand / collapse ----
    async def toggle_expand(self, entry_id: int) -> bool:
        """Flip the expansion of one entry and return whether it is now expanded.

        Raises StoreError when the card fetch fails; the entry is then left
        collapsed and uncached so the next toggle retries.
        """
        chapter = self._chapters.get(entry_id)

        if chapter is not None and chapter.expanded:
            self._chapters[entry_id] = replace(chapter, expanded=False)
            return False

        if entry_id in self._pending:
            # toggled again before the cards arrived: withdraw the expansion
            del self._pending[entry_id]
            return False

        if chapter is not None and chapter.loaded:
            logger.debug("Cache hit for entry %s", entry_id)
            self._chapters[entry_id] = replace(chapter, expanded=True)
            return True

        token = object()
        self._pending[entry_id] = token
        try:
            cards = await self._fetch(entry_id)
        except StoreError:
            if entry_id not in self._pending:
                logger.debug("Ignoring failed fetch for withdrawn entry %s", entry_id)
                return self.is_expanded(entry_id)
            self._pending.pop(entry_id, None)
            logger.warning("Rolled back expansion of entry %s after fetch failure", entry_id)
            raise
        except BaseException:
            # cancelled: release the pending mark unless a later toggle owns it now
            if self._pending.get(entry_id) is token:
                del self._pending[entry_id]
            raise

        current = self._chapters.get(entry_id)
        if current is None or not current.loaded:
            current = ChapterCacheEntry(entry_id=entry_id, loaded=True, cards=cards, expanded=False)

        if entry_id in self._pending:
            del self._pending[entry_id]
            current = replace(current, expanded=True)
        self._chapters[entry_id] = current
        return current.expanded

    async def _fetch(self, entry_id: int) -> Tuple[Card, ...]:
        future = self._inflight.get(entry_id)
        if future is not None:
            logger.debug("Joining in-flight fetch for entry %s", entry_id)
        else:
            future = asyncio.ensure_future(self._load_cards(entry_id))
            self._inflight[entry_id] = future
            future.add_done_callback(lambda f: self._fetch_done(entry_id, f))
        # one caller being cancelled must not cancel the fetch the others share
        return await asyncio.shield(future)

    def _fetch_done(self, entry_id: int, future: "asyncio.Future[Tuple[Card, ...]]") -> None:
        if self._inflight.get(entry_id) is future:
            del self._inflight[entry_id]
        if not future.cancelled() and future.exception() is not None:
            logger.debug("Card fetch for entry %s failed: %s", entry_id, future.exception())

    async def _load_cards(self, entry_id: int) -> Tuple[Card, ...]:
        try:
            cards = await self._store.list_cards_for_entry(entry_id)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to load cards for entry {entry_id}: {e}") from e
        return tuple(sorted(cards, key=lambda c: c.id))


# ============================================================
# Composition buffer
# ============================================================
@dataclass
class CompositionBuffer:
    """The entry being written and its not-yet-saved card drafts."""

    store: CardStore
    title: str = ""
    body: str = ""
    drafts: List[CardDraft] = field(default_factory=list)

    def add_draft(self, question: str = "", answer: str = "") -> int:
        self.drafts.append(CardDraft(question=question, answer=answer))
        return len(self.drafts) - 1

    def update_draft(self, index: int, field_name: str, value: str) -> CardDraft:
        if field_name not in DRAFT_FIELDS:
            raise ValueError(f"Unknown draft field: {field_name!r}")
        updated = replace(self.drafts[index], **{field_name: value})
        self.drafts[index] = updated
        return updated

    def remove_draft(self, index: int) -> CardDraft:
        return self.drafts.pop(index)

    def import_json(self, raw_text: str) -> int:
        """Append every question in `raw_text`, or none of them if the document is bad."""
        imported = normalize_import(raw_text)
        self.drafts.extend(imported)
        return len(imported)

    def valid_drafts(self) -> List[CardDraft]:
        return [d for d in self.drafts if d.is_complete()]

    def clear(self) -> None:
        self.title = ""
        self.body = ""
        self.drafts = []

    async def save(self) -> Entry:
        """
        Write the entry, then its complete drafts.

        If the entry is written but the cards are not, the entry stays and the
        StoreError carries it in `.entry`; the buffer keeps its contents.
        """
        if not self.title.strip() or not self.body.strip():
            raise ValidationError(EMPTY_FIELD, "Please fill in both the title and content.")

        drafts = self.valid_drafts()
        try:
            entry = await self.store.create_entry(self.title, self.body)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to save entry: {e}") from e

        try:
            await self.store.create_cards(entry.id, drafts)
        except Exception as e:
            logger.warning("Entry %s saved without its %d cards: %s", entry.id, len(drafts), e)
            if isinstance(e, StoreError):
                e.entry = entry
                raise
            raise StoreError(f"Entry saved but its cards were not: {e}", entry=entry) from e

        logger.info("Saved entry %s with %d cards", entry.id, len(drafts))
        self.clear()
        return entry
