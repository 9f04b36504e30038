"""
Selection, deletion and metadata-edit rules over the persisted roast sessions.

The reconciler holds the in-memory collection and writes the full collection
back through its store after every change. When a save fails the in-memory
collection has already changed; the PersistenceIOError is raised to the
caller and the two are not rolled back into agreement.
"""

import dataclasses
import logging

from roastmon.errors import SessionNotFound
from roastmon.sessions import clean_text, clean_weight

# Roasts at least this long are treated as complete and cannot be deleted.
DELETE_GUARD_SECONDS = 300

reconciler_logger = logging.getLogger("roastmon.sessions")


def is_deletable(session) -> bool:
    return session.total_time_seconds < DELETE_GUARD_SECONDS


def roast_index(session) -> float | None:
    """Roasted weight over green weight, or None when it cannot be shown."""
    green = session.bean_weight_grams
    roasted = session.roasted_weight_grams
    if green is None or roasted is None or green <= 0:
        return None
    return roasted / green


class SessionReconciler:
    """In-memory session collection plus the current selection."""

    def __init__(self, store, sessions=None):
        self.store = store
        self._sessions = list(sessions or [])
        self.selected_id = None
        self._reconcile_selection()

    @property
    def sessions(self):
        return tuple(self._sessions)

    @property
    def selected(self):
        return self.get(self.selected_id) if self.selected_id else None

    def get(self, session_id):
        return next((s for s in self._sessions if s.id == session_id), None)

    def load(self, cancel_token=None):
        """
        Replace the in-memory collection with the store's contents.

        Returns:
            list | None: The loaded sessions, or None if the token was cancelled,
                         in which case nothing was changed.
        """
        loaded = self.store.load(cancel_token)
        if cancel_token is not None and cancel_token.cancelled:
            reconciler_logger.info("Session load cancelled, keeping current sessions")
            return None
        self._set_sessions(loaded)
        return list(self._sessions)

    def add(self, session):
        """Append a newly finalized session, select it and persist."""
        if self.get(session.id) is not None:
            raise ValueError(f"session id {session.id!r} already exists")
        self._sessions.append(session)
        self.selected_id = session.id
        self._reconcile_selection()
        self._save()
        return session

    def select(self, session_id) -> bool:
        if self.get(session_id) is None:
            return False
        self.selected_id = session_id
        return True

    def delete(self, ids):
        """
        Delete the requested sessions that are shorter than the guard limit.

        Longer sessions named in ``ids`` are skipped silently.

        Returns:
            list[str]: Ids actually removed.
        """
        wanted = set(ids)
        removed = [s.id for s in self._sessions if s.id in wanted and is_deletable(s)]
        skipped = wanted.difference(removed)
        if skipped:
            reconciler_logger.info(f"Delete skipped for protected or unknown sessions: {sorted(skipped)}")
        if not removed:
            return []
        self._set_sessions([s for s in self._sessions if s.id not in removed])
        self._save()
        return removed

    def edit(self, session_id, fields: dict):
        """
        Merge metadata into one session.

        Only beanName, beanWeightGrams, roastedWeightGrams and tastingNote are
        considered. Weights must be finite and non-negative; anything else
        leaves that field unset. Blank text also leaves the field unset.

        Raises:
            SessionNotFound: If no session has ``session_id``.
        """
        index = next((i for i, s in enumerate(self._sessions) if s.id == session_id), None)
        if index is None:
            raise SessionNotFound(session_id)

        changes = {}
        for key, attr in (("beanName", "bean_name"), ("tastingNote", "tasting_note")):
            if key in fields:
                changes[attr] = clean_text(fields[key])
        for key, attr in (
            ("beanWeightGrams", "bean_weight_grams"),
            ("roastedWeightGrams", "roasted_weight_grams"),
        ):
            if key in fields:
                changes[attr] = clean_weight(fields[key])

        updated = dataclasses.replace(self._sessions[index], **changes)
        self._sessions[index] = updated
        self._save()
        return updated

    def _set_sessions(self, sessions):
        self._sessions = list(sessions)
        self._reconcile_selection()

    def _reconcile_selection(self):
        if self.selected_id is not None and self.get(self.selected_id) is not None:
            return
        self.selected_id = self._sessions[0].id if self._sessions else None

    def _save(self):
        self.store.save(list(self._sessions))
