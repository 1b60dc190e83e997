"""
Live wall slideshow state machine.

The slideshow keeps two views of the approved uploads apart:

- ``source_uploads``: what the database returned on the last fetch.
- ``display_queue``: the order the wall is actually playing.

Only the transitions in this module write ``display_queue``. A refresh never
moves the playback position; new uploads are spliced in right after the item
on screen so they play next without jumping the line.

Two display slots (A/B) alternate for the crossfade. The visible slot always
holds ``display_queue[current_index]`` and the hidden slot holds the next
item so the browser can load it before it fades in.

Every transition is a pure function ``state -> state``; the display
controller owns the single mutable reference.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timezone

INSERTION = 'insertion'
NEWEST_FIRST = 'newest-first'
ORDERING_MODES = (INSERTION, NEWEST_FIRST)


@dataclass(frozen=True)
class SlideshowState:
    source_uploads: tuple = ()
    display_queue: tuple = ()
    current_index: int = 0
    showing_slot_a: bool = True
    slot_a: dict = None
    slot_b: dict = None
    is_refreshing: bool = False
    ordering_mode: str = INSERTION
    has_completed_round: bool = False

    @property
    def current_upload(self):
        if not self.display_queue:
            return None
        return self.display_queue[self.current_index]

    @property
    def visible_slot(self):
        return self.slot_a if self.showing_slot_a else self.slot_b

    @property
    def hidden_slot(self):
        return self.slot_b if self.showing_slot_a else self.slot_a

    def queue_ids(self):
        return [upload['id'] for upload in self.display_queue]


def created_timestamp(upload):
    """Creation time of an upload as epoch seconds (datetime, ISO string or number)."""
    value = upload.get('created_at')
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def newest_first(uploads):
    return tuple(sorted(uploads, key=created_timestamp, reverse=True))


def oldest_first(uploads):
    return tuple(sorted(uploads, key=created_timestamp))


def _fill(slot, wanted):
    # keep the loaded slot when it already shows this exact upload
    if slot is not None and slot.get('id') == wanted.get('id') and slot == wanted:
        return slot
    return wanted


def _sync_slots(state):
    queue = state.display_queue
    if not queue:
        return replace(state, current_index=0, slot_a=None, slot_b=None)

    current = queue[state.current_index]
    upcoming = queue[(state.current_index + 1) % len(queue)]
    if state.showing_slot_a:
        return replace(state, slot_a=_fill(state.slot_a, current), slot_b=_fill(state.slot_b, upcoming))
    return replace(state, slot_b=_fill(state.slot_b, current), slot_a=_fill(state.slot_a, upcoming))


def initial_load(state, uploads):
    """Replace everything with a fresh fetch; playback restarts at the newest upload."""
    ordered = newest_first(uploads)
    fresh = replace(
        state,
        source_uploads=ordered,
        display_queue=ordered,
        current_index=0,
        showing_slot_a=True,
        slot_a=None,
        slot_b=None,
        is_refreshing=False,
        has_completed_round=False,
    )
    return _sync_slots(fresh)


def begin_refresh(state):
    return replace(state, is_refreshing=True)


def apply_refresh(state, fetched):
    """
    Merge a full refetch of approved uploads into the playing queue.

    Uploads that disappeared (deleted or unapproved) are dropped and the
    index is moved so the same item stays on screen; when the item on screen
    is the one that vanished, the item that followed it takes its place.
    Uploads whose id was not part of the previous fetch are inserted right
    after the current item, oldest first.
    """
    fetched = newest_first(fetched)
    fetched_by_id = {upload['id']: upload for upload in fetched}
    known_ids = {upload['id'] for upload in state.source_uploads}
    new_uploads = oldest_first(u for u in fetched if u['id'] not in known_ids)

    kept = []
    removed_before_current = 0
    for position, upload in enumerate(state.display_queue):
        refreshed = fetched_by_id.get(upload['id'])
        if refreshed is None:
            if position < state.current_index:
                removed_before_current += 1
            continue
        kept.append(refreshed)

    index = state.current_index - removed_before_current
    index = max(0, min(index, len(kept) - 1))

    has_completed_round = state.has_completed_round
    if new_uploads:
        insert_at = index + 1 if kept else 0
        kept[insert_at:insert_at] = new_uploads
        has_completed_round = False

    merged = replace(
        state,
        source_uploads=fetched,
        display_queue=tuple(kept),
        current_index=index,
        is_refreshing=False,
        has_completed_round=has_completed_round,
    )
    return _sync_slots(merged)


def needs_advance_timer(state):
    return len(state.display_queue) >= 2


def advance(state):
    """Show the next item. Queues shorter than two never move."""
    size = len(state.display_queue)
    if size < 2:
        return state

    finished_round = state.current_index == size - 1
    moved = replace(
        state,
        current_index=(state.current_index + 1) % size,
        showing_slot_a=not state.showing_slot_a,
        has_completed_round=state.has_completed_round or finished_round,
    )
    return _sync_slots(moved)


def should_reorder(state):
    return state.ordering_mode == NEWEST_FIRST and state.has_completed_round


def reorder_round(state):
    """After a full pass in newest-first mode, restart from the newest upload."""
    if not should_reorder(state):
        return state
    reordered = replace(
        state,
        display_queue=newest_first(state.display_queue),
        current_index=0,
        has_completed_round=False,
    )
    return _sync_slots(reordered)


def change_ordering_mode(state, mode):
    if mode not in ORDERING_MODES:
        raise ValueError(f"Unknown ordering mode: {mode}")
    return replace(state, ordering_mode=mode, has_completed_round=False)
