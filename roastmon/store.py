"""
Session persistence backends.

FileSessionStore keeps the whole collection in one JSON file on the server.
HttpSessionStore is the viewer-side client for the /api/sessions endpoint.
Both replace the whole collection on save; there is no versioning, so two
writers racing each other means the last one wins.
"""

import json
import logging
import threading
from pathlib import Path

import requests

from roastmon.errors import LoadCancelled, PersistenceIOError, ValidationError
from roastmon.metrics import SESSION_SAVE_FAILURES_TOTAL
from roastmon.sessions import parse_sessions_payload, sessions_to_payload

store_logger = logging.getLogger("roastmon.store")

DEFAULT_SESSION_FILE = Path(__file__).resolve().parent / "sessions.json"


class CancelToken:
    """
    Signals that an in-flight load should be abandoned.

    Callbacks registered with on_cancel() run once, on the first cancel(), or
    immediately if the token is already cancelled.
    """

    def __init__(self):
        self._event = threading.Event()
        self._callbacks = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback):
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self):
        if self.cancelled:
            raise LoadCancelled("session load cancelled")


class FileSessionStore:
    """JSON file holding ``{"sessions": [...]}``."""

    def __init__(self, path=DEFAULT_SESSION_FILE):
        self.path = Path(path)

    def load(self, cancel_token=None):
        """
        Load the stored sessions.

        Returns:
            list[RoastSession]: The stored sessions, or an empty list if the file
                                is missing or unreadable.
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if not self.path.exists():
            return []

        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            return parse_sessions_payload(data)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            store_logger.error(f"Failed to load sessions from {self.path}: {exc}")
            return []

    def save(self, sessions):
        """
        Replace the stored collection.

        Writes to a temporary file first and then renames it over the target.

        Raises:
            PersistenceIOError: If the file could not be written.
        """
        tmp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(sessions_to_payload(sessions), f, indent=2, ensure_ascii=False)
            tmp_path.replace(self.path)
        except OSError as exc:
            SESSION_SAVE_FAILURES_TOTAL.inc()
            store_logger.error(f"Failed to save sessions to {self.path}: {exc}")
            raise PersistenceIOError(f"Failed to save sessions: {exc}") from exc


class HttpSessionStore:
    """Client for the roast monitor's /api/sessions endpoint."""

    def __init__(self, base_url, timeout=5.0, session_factory=requests.Session):
        self.url = base_url.rstrip("/") + "/api/sessions"
        self.timeout = timeout
        self._session_factory = session_factory

    def load(self, cancel_token=None):
        """
        Fetch the session collection.

        Cancelling the token closes the underlying HTTP session, which aborts the
        request; the caller then gets LoadCancelled and nothing else happens.

        Raises:
            LoadCancelled: If the token was cancelled before or during the request.
            PersistenceIOError: On transport errors or a malformed answer.
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        http = self._session_factory()
        if cancel_token is not None:
            cancel_token.on_cancel(http.close)
        try:
            response = http.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            if cancel_token is not None and cancel_token.cancelled:
                raise LoadCancelled("session load cancelled") from exc
            raise PersistenceIOError(f"Failed to load sessions: {exc}") from exc
        finally:
            http.close()

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            return parse_sessions_payload(payload)
        except ValidationError as exc:
            raise PersistenceIOError(f"Server returned invalid sessions: {exc}") from exc

    def save(self, sessions):
        """
        Replace the collection on the server.

        Raises:
            PersistenceIOError: On transport errors or a non-2xx answer.
        """
        http = self._session_factory()
        try:
            response = http.put(self.url, json=sessions_to_payload(sessions), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            SESSION_SAVE_FAILURES_TOTAL.inc()
            raise PersistenceIOError(f"Failed to save sessions: {exc}") from exc
        finally:
            http.close()
