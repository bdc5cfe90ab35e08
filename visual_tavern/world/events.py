"""Round / key-event / active-event state machine over a WorldSession.

Pure functions: they mutate the session in place and never persist or call
an LLM. Callers hold the session lock and save afterwards.

Key events are visited in order. ``current_key_event_index`` only grows, and
``completed_key_events`` only gains indices. Once the index has run past the
last key event, completion is a no-op and current_key_event raises
NoMoreKeyEvents.
"""

from __future__ import annotations

import logging

from ..errors import EventNotFound, NoMoreKeyEvents
from ..models import Event, KeyEvent, WorldSession, now_iso

logger = logging.getLogger(__name__)


def current_key_event(session: WorldSession) -> KeyEvent:
    index = session.current_key_event_index
    key_event = session.key_event(index)
    if key_event is None:
        raise NoMoreKeyEvents(index, session.total_key_events)
    return key_event


def find_active_event(session: WorldSession, event_id: str) -> Event:
    for event in session.active_events:
        if event.event_id == event_id:
            return event
    raise EventNotFound(event_id)


def add_event(session: WorldSession, event: Event) -> None:
    session.active_events.append(event)
    session.event_history.append(event.model_copy(deep=True))
    logger.info("Event %s added for NPC %s in round %d", event.event_id, event.target_npc_id, event.round)


def terminate_event(session: WorldSession, event_id: str) -> Event:
    """Complete an active event and drop it from the active list."""
    event = find_active_event(session, event_id)
    event.status = "completed"
    event.completed_at = now_iso()
    session.active_events = [e for e in session.active_events if e.event_id != event_id]

    for i, past in enumerate(session.event_history):
        if past.event_id == event_id:
            session.event_history[i] = event.model_copy(deep=True)
            break
    logger.info("Event %s terminated", event_id)
    return event


def complete_current_key_event(session: WorldSession) -> bool:
    """Mark the current key event complete and advance. Returns False when there is none left."""
    index = session.current_key_event_index
    if index >= session.total_key_events:
        return False
    if index not in session.completed_key_events:
        session.completed_key_events.append(index)
    session.current_key_event_index = index + 1
    logger.info(
        "Key event %d completed (%d/%d)",
        index, len(session.completed_key_events), session.total_key_events,
    )
    return True


def all_key_events_completed(session: WorldSession) -> bool:
    completed = set(session.completed_key_events)
    return all(i in completed for i in range(session.total_key_events))


def begin_new_round(session: WorldSession) -> None:
    """Clear active events and move to the next round and key event."""
    dropped = len(session.active_events)
    session.active_events = []
    session.current_round += 1
    session.current_key_event_index += 1
    logger.info(
        "Round %d started at key event %d (%d active events dropped)",
        session.current_round, session.current_key_event_index, dropped,
    )
