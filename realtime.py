"""
Change-notification channel for challenge rows.

Every committed write to ``streak_challenges`` is published to the app's
ChallengeFeed as an INSERT or UPDATE event. In-process subscribers (the
automatic result reconciliation, the SocketIO bridge) filter by challenge
id or by a column-equality match such as ``opponent_id = <user>``.

The SocketIO bridge relays events to browser clients:
  - ``user:<id>`` room, joined on connect: INSERTs where the user is the
    opponent (incoming challenges) and UPDATEs of their own challenges
  - ``challenge:<id>`` room, joined via ``subscribe_challenge``: every
    UPDATE of that challenge
  - everyone: ``online_users`` whenever a user's first socket opens or
    their last one closes

Rows leave through ``client_row`` so the answer key stays on the server.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from flask_login import current_user
from flask_socketio import join_room, leave_room

from challenge_state import client_row, role_of
from extensions import socketio

logger = logging.getLogger(__name__)

EVENT_INSERT = "INSERT"
EVENT_UPDATE = "UPDATE"


@dataclass(frozen=True)
class ChangeEvent:
    type: str
    new: dict

    @property
    def challenge_id(self) -> str:
        return self.new["id"]


@dataclass
class _Subscription:
    callback: Callable[[ChangeEvent], None]
    events: frozenset[str]
    challenge_id: str | None = None
    column: str | None = None
    value: object = None

    def matches(self, event: ChangeEvent) -> bool:
        if event.type not in self.events:
            return False
        if self.challenge_id is not None and event.challenge_id != self.challenge_id:
            return False
        if self.column is not None and event.new.get(self.column) != self.value:
            return False
        return True


class ChallengeFeed:
    """Synchronous publish/subscribe over challenge row changes."""

    def __init__(self) -> None:
        self._subs: dict[int, _Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(
        self,
        callback: Callable[[ChangeEvent], None],
        *,
        challenge_id: str | None = None,
        column: str | None = None,
        value: object = None,
        events: tuple[str, ...] = (EVENT_INSERT, EVENT_UPDATE),
    ) -> Callable[[], None]:
        """Register a callback and return a function that removes it."""
        sub = _Subscription(callback, frozenset(events), challenge_id, column, value)
        with self._lock:
            sub_id = next(self._ids)
            self._subs[sub_id] = sub

        def unsubscribe() -> None:
            with self._lock:
                self._subs.pop(sub_id, None)

        return unsubscribe

    def publish(self, event_type: str, row: dict) -> int:
        """Deliver a copy of the row to every matching subscriber. Returns delivery count."""
        event = ChangeEvent(event_type, row)
        with self._lock:
            targets = [s for s in self._subs.values() if s.matches(event)]

        delivered = 0
        for sub in targets:
            try:
                sub.callback(ChangeEvent(event_type, copy.deepcopy(row)))
                delivered += 1
            except Exception:
                logger.exception("Challenge feed subscriber failed for %s %s",
                                 event_type, event.challenge_id)
        return delivered

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)


def get_feed() -> ChallengeFeed:
    """Return the feed bound to the current app."""
    feed = current_app.extensions.get("challenge_feed")
    if feed is None:
        feed = ChallengeFeed()
        current_app.extensions["challenge_feed"] = feed
    return feed


def publish(event_type: str, row: dict | None) -> None:
    if row is None:
        return
    get_feed().publish(event_type, row)


# ── Presence ──────────────────────────────────────────────


class Presence:
    """Open socket count per user in this process."""

    def __init__(self) -> None:
        self._counts: dict[int, int] = {}
        self._lock = threading.Lock()

    def connect(self, user_id: int) -> bool:
        """Count a new socket. True when it is the user's first."""
        with self._lock:
            self._counts[user_id] = self._counts.get(user_id, 0) + 1
            return self._counts[user_id] == 1

    def disconnect(self, user_id: int) -> bool:
        """Drop a socket. True when the user has none left."""
        with self._lock:
            remaining = self._counts.get(user_id, 0) - 1
            if remaining > 0:
                self._counts[user_id] = remaining
                return False
            self._counts.pop(user_id, None)
            return True


def get_presence() -> Presence:
    presence = current_app.extensions.get("presence")
    if presence is None:
        presence = Presence()
        current_app.extensions["presence"] = presence
    return presence


def online_users(exclude_id: int | None = None) -> list[dict]:
    """Users seen on a socket within the presence window, newest first."""
    from db_stores import UserStoreDB

    window = current_app.config.get("PRESENCE_WINDOW_SECONDS", 300)
    return UserStoreDB.online(datetime.now() - timedelta(seconds=window), exclude_id)


def _broadcast_online() -> None:
    socketio.emit("online_users", {"users": online_users()})


# ── SocketIO bridge ───────────────────────────────────────


def init_realtime(app) -> ChallengeFeed:
    """Create the app's feed and relay its events to SocketIO rooms."""
    feed = ChallengeFeed()
    app.extensions["challenge_feed"] = feed
    app.extensions["presence"] = Presence()
    feed.subscribe(_relay_to_sockets)
    return feed


def _relay_to_sockets(event: ChangeEvent) -> None:
    row = client_row(event.new)
    if event.type == EVENT_INSERT:
        if row.get("opponent_id") is not None:
            socketio.emit("challenge_insert", row, to=f"user:{row['opponent_id']}")
        return
    socketio.emit("challenge_update", row, to=f"challenge:{row['id']}")
    for uid in {row.get("host_id"), row.get("opponent_id")} - {None}:
        socketio.emit("challenge_update", row, to=f"user:{uid}")


def publish_progress(challenge_id: str, user_id: int, progress: dict) -> None:
    """Tell the challenge room how far a player got. Progress only; no lockstep."""
    socketio.emit(
        "challenge_progress",
        {"challengeId": challenge_id, "userId": user_id, **progress},
        to=f"challenge:{challenge_id}",
    )


@socketio.on("connect")
def _on_connect(auth=None):
    from db_stores import UserStoreDB

    if not current_user.is_authenticated:
        return False
    join_room(f"user:{current_user.id}")
    first = get_presence().connect(current_user.id)
    UserStoreDB.set_last_seen(current_user.id, datetime.now())
    if first:
        _broadcast_online()
    logger.debug("socket connected user=%s", current_user.id)
    return None


@socketio.on("disconnect")
def _on_disconnect(reason=None):
    from db_stores import UserStoreDB

    if not current_user.is_authenticated:
        return
    if get_presence().disconnect(current_user.id):
        UserStoreDB.set_last_seen(current_user.id, None)
        _broadcast_online()
    logger.debug("socket disconnected user=%s", current_user.id)


@socketio.on("presence_ping")
def _on_presence_ping(data=None):
    from db_stores import UserStoreDB

    UserStoreDB.set_last_seen(current_user.id, datetime.now())
    return {"ok": True}


@socketio.on("subscribe_challenge")
def _on_subscribe(data):
    from db_stores import ChallengeStoreDB

    challenge_id = (data or {}).get("challengeId", "")
    row = ChallengeStoreDB.get(challenge_id)
    if row is None or role_of(row, current_user.id) is None:
        return {"ok": False, "error": "Challenge not found"}
    join_room(f"challenge:{challenge_id}")
    return {"ok": True, "challenge": client_row(row)}


@socketio.on("unsubscribe_challenge")
def _on_unsubscribe(data):
    leave_room(f"challenge:{(data or {}).get('challengeId', '')}")
    return {"ok": True}
