from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Coroutine, Dict, TypeVar

import streamlit as st

import recap_core as core
import recap_store as store

T = TypeVar("T")

VIEWS = ["write", "recap", "read"]
VIEW_LABELS = {"write": "Write & Reflect", "recap": "Active Recall", "read": "Read"}


# ============================================================
# Plumbing
# ============================================================
def configure_logging() -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def fmt_date(iso: str) -> str:
    try:
        return datetime.fromisoformat(iso).strftime("%Y-%m-%d")
    except (TypeError, ValueError):
        return iso or ""


# ============================================================
# State
# ============================================================
def ensure_state():
    if st.session_state.get("initialized"):
        return

    backend = store.open_store()

    st.session_state.initialized = True
    st.session_state.store = backend
    st.session_state.cache = core.EntryCardCache(backend)
    st.session_state.buffer = core.CompositionBuffer(backend)

    # one ReviewEngine per expanded chapter
    st.session_state.engines = {}  # type: Dict[int, core.ReviewEngine]

    st.session_state.view = "write"
    st.session_state.selected_entry_id = None
    st.session_state.feedback_banner = ""
    st.session_state.error_banner = ""
    st.session_state.chapter_errors = {}  # type: Dict[int, str]
    st.session_state.show_json_import = False

    # bumped whenever drafts are added/removed/imported or the form is cleared,
    # so keyed widgets re-read their values from the buffer
    st.session_state.form_rev = 0


def widget_key(state: Any, name: str, i: Any = "") -> str:
    return f"{name}_{state.form_rev}_{i}"


def bump_form(state: Any) -> None:
    state.form_rev += 1


def go(view: str, entry_id: Any = None):
    st.session_state.view = view
    if entry_id is not None:
        st.session_state.selected_entry_id = entry_id
    st.rerun()


def engine_for(state: Any, entry_id: int) -> core.ReviewEngine:
    cache: core.EntryCardCache = state.cache
    cards = cache.cards_for(entry_id)
    engines: Dict[int, core.ReviewEngine] = state.engines
    eng = engines.get(entry_id)
    if eng is None:
        eng = core.ReviewEngine(cards)
        engines[entry_id] = eng
    elif eng.cards != cards:
        eng.reset(cards)
    return eng


def toggle_chapter(state: Any, entry_id: int) -> None:
    cache: core.EntryCardCache = state.cache
    state.chapter_errors.pop(entry_id, None)
    try:
        expanded = run(cache.toggle_expand(entry_id))
    except core.StoreError as e:
        state.chapter_errors[entry_id] = str(e)
        return
    if not expanded:
        # a re-expanded chapter starts again from its first card
        state.engines.pop(entry_id, None)


# ============================================================
# Write
# ============================================================
def render_write():
    buf: core.CompositionBuffer = st.session_state.buffer

    st.header("✍️ Write & Reflect")

    state = st.session_state
    buf.title = st.text_input(
        "Title", value=buf.title, key=widget_key(state, "title"), placeholder="What did you learn today?"
    )
    buf.body = st.text_area(
        "Blog content",
        value=buf.body,
        key=widget_key(state, "body"),
        height=260,
        placeholder="Write your thoughts here...",
    )

    st.subheader("Recap questions")
    c1, c2 = st.columns(2)
    with c1:
        label = "Cancel JSON" if st.session_state.show_json_import else "Import JSON"
        if st.button(label, use_container_width=True):
            st.session_state.show_json_import = not st.session_state.show_json_import
            st.rerun()
    with c2:
        if st.button("Add question", use_container_width=True):
            buf.add_draft()
            bump_form(state)
            st.rerun()

    if st.session_state.show_json_import:
        raw = st.text_area(
            "Paste JSON here",
            height=160,
            placeholder='{"questions": [{"question": "Sample?", "options": {"a": "Yes", "b": "No"}, "answer": "a"}]}',
        )
        if st.button("Parse & add", type="primary"):
            try:
                n = buf.import_json(raw)
            except core.ValidationError as e:
                st.session_state.error_banner = e.message
            else:
                bump_form(state)
                st.session_state.show_json_import = False
                st.session_state.error_banner = ""
                st.session_state.feedback_banner = f"📥 Imported {n} question(s)."
            st.rerun()

    if not buf.drafts and not st.session_state.show_json_import:
        st.caption("No questions added yet. Import JSON or add them manually!")

    for i, d in enumerate(list(buf.drafts)):
        with st.container(border=True):
            q = st.text_input(
                f"Question {i + 1}",
                value=d.question,
                key=widget_key(state, "q", i),
                placeholder="e.g., What is the primary key?",
            )
            a = st.text_area(
                f"Answer {i + 1}",
                value=d.answer,
                key=widget_key(state, "a", i),
                height=80,
                placeholder="The answer to recall...",
            )
            if q != d.question:
                buf.update_draft(i, "question", q)
            if a != d.answer:
                buf.update_draft(i, "answer", a)
            if st.button("🗑 Remove", key=widget_key(state, "rm", i)):
                buf.remove_draft(i)
                bump_form(state)
                st.rerun()

    st.divider()
    if st.button("💾 Save entry", type="primary"):
        try:
            entry = run(buf.save())
        except core.ValidationError as e:
            st.session_state.error_banner = e.message
        except core.StoreError as e:
            if e.entry is not None:
                st.session_state.error_banner = f"Saved '{e.entry.title}' but not its cards: {e}"
            else:
                st.session_state.error_banner = str(e) or "Failed to save blog post."
        else:
            st.session_state.error_banner = ""
            st.session_state.feedback_banner = f"✅ Saved '{entry.title}'."
            bump_form(state)
            go("recap")
        st.rerun()


# ============================================================
# Recap
# ============================================================
def render_chapter(summary: core.EntrySummary):
    cache: core.EntryCardCache = st.session_state.cache
    entry = summary.entry
    expanded = cache.is_expanded(entry.id)

    with st.container(border=True):
        top, btn = st.columns([5, 1], vertical_alignment="center")
        with top:
            st.caption("CHAPTER")
            st.markdown(f"### {entry.title}")
            st.caption(f"{fmt_date(entry.created_at)} • {summary.card_count} Cards")
        with btn:
            if st.button("▲" if expanded else "▼", key=f"toggle_{entry.id}", use_container_width=True):
                with st.spinner("Loading cards..."):
                    toggle_chapter(st.session_state, entry.id)
                st.rerun()

        err = st.session_state.chapter_errors.get(entry.id)
        if err:
            st.error(err)
            if st.button("Try again", key=f"retry_{entry.id}"):
                toggle_chapter(st.session_state, entry.id)
                st.rerun()

        if not cache.is_expanded(entry.id):
            return

        render_carousel(entry, engine_for(st.session_state, entry.id))

        if st.button("📖 Read source entry", key=f"read_{entry.id}"):
            go("read", entry.id)


def render_carousel(entry: core.Entry, eng: core.ReviewEngine):
    card = eng.current_card()
    if card is None:
        st.caption("No cards in this chapter.")
        return

    st.caption(f"{entry.title} • {eng.position_label()}")
    st.markdown(f"**{card.question}**")
    if eng.revealed:
        st.success(card.answer)

    b1, b2, b3 = st.columns(3)
    with b1:
        if st.button("◀ Prev", key=f"prev_{entry.id}", use_container_width=True):
            run(eng.handle("prev"))
            st.rerun()
    with b2:
        label = "Hide answer" if eng.revealed else "👁 Reveal answer"
        if st.button(label, key=f"flip_{entry.id}", use_container_width=True, type="primary"):
            run(eng.handle(core.REVEAL))
            st.rerun()
    with b3:
        if st.button("Next ▶", key=f"next_{entry.id}", use_container_width=True):
            run(eng.handle("next"))
            st.rerun()


def render_recap():
    cache: core.EntryCardCache = st.session_state.cache

    st.header("🧠 Active Recall")
    try:
        summaries = run(cache.list_summaries())
    except core.StoreError as e:
        st.error(f"Failed to load your memory bank. {e}")
        if st.button("Try again"):
            st.rerun()
        return

    st.caption(f"{len(summaries)} Chapters")
    if not summaries:
        st.info("No recaps yet. Write a blog entry and add questions to see them here.")
        return

    for s in summaries:
        render_chapter(s)


# ============================================================
# Read
# ============================================================
def render_read():
    cache: core.EntryCardCache = st.session_state.cache

    if st.button("← Back to recaps"):
        go("recap")

    entry_id = st.session_state.selected_entry_id
    if entry_id is None:
        st.warning("No entry selected.")
        return
    try:
        entry = run(cache.read_entry(entry_id))
    except core.NotFoundError:
        st.error("Blog not found.")
        return
    except core.StoreError as e:
        st.error(str(e))
        return

    st.title(entry.title)
    st.caption(f"Posted on {fmt_date(entry.created_at)}")
    st.markdown(entry.body)


# ============================================================
# Main
# ============================================================
def main():
    st.set_page_config(page_title="Recap Journal", layout="centered")
    configure_logging()
    ensure_state()

    with st.sidebar:
        st.header("Recap Journal")
        choice = st.radio(
            "Screen",
            VIEWS,
            index=VIEWS.index(st.session_state.view),
            format_func=lambda v: VIEW_LABELS[v],
        )
        if choice != st.session_state.view:
            go(choice)
        st.caption(f"Storage: {store.PERSISTENCE_BACKEND}")

    if st.session_state.error_banner:
        st.error(st.session_state.error_banner)
        if st.button("Dismiss"):
            st.session_state.error_banner = ""
            st.rerun()
    if st.session_state.feedback_banner:
        st.success(st.session_state.feedback_banner)
        st.session_state.feedback_banner = ""

    view = st.session_state.view
    if view == "write":
        render_write()
    elif view == "recap":
        render_recap()
    else:
        render_read()


if __name__ == "__main__":
    main()
