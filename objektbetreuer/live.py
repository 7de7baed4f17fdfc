"""Live queries: push the full current result set to subscribers on every change.

Repositories call ``LiveQueryHub.notify(entity, company_id)`` after each
committed write. Subscribers to the same logical query share one cache entry
(keyed by entity, tenant and filters) and one evaluation per change; the entry
is dropped when its last subscriber leaves.
"""
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ConnectivityError, PermissionDeniedError, PortalError

logger = logging.getLogger("portal.live")

OnData = Callable[[List[Any]], None]
OnError = Callable[[PortalError], None]


def _filter_value(value) -> str:
    # JobStatus.pending and "pending" name the same query
    return value.value if isinstance(value, Enum) else str(value)


@dataclass(frozen=True)
class LiveQuery:
    entity: str
    company_id: str
    filters: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Tuple:
        return (
            self.entity,
            self.company_id,
            tuple(sorted((k, _filter_value(v)) for k, v in self.filters.items() if v is not None)),
        )


class _Listener:
    def __init__(self, on_data: OnData, on_error: Optional[OnError], authorize: Optional[Callable[[], None]]):
        self.on_data = on_data
        self.on_error = on_error
        self.authorize = authorize
        self.last_version = -1
        self.cancelled = False


class _SharedQuery:
    def __init__(self, query: LiveQuery, fetch: Callable[[], List[Any]]):
        self.query = query
        self.fetch = fetch
        self.listeners: List[_Listener] = []
        self.lock = threading.Lock()
        self.version = 0
        self.result: List[Any] = []
        self.fetch_count = 0

    def evaluate(self) -> Tuple[int, List[Any]]:
        with self.lock:
            self.fetch_count += 1
            result = list(self.fetch())
            self.version += 1
            self.result = result
            return self.version, result


class Subscription:
    """Handle returned by ``subscribe``; call ``unsubscribe()`` when the view goes away."""

    def __init__(self, hub: "LiveQueryHub", key: Optional[Tuple], listener: Optional[_Listener]):
        self._hub = hub
        self._key = key
        self._listener = listener

    @property
    def active(self) -> bool:
        return self._listener is not None and not self._listener.cancelled

    def unsubscribe(self):
        if self._listener is None:
            return
        listener, self._listener = self._listener, None
        self._hub._detach(self._key, listener)


class LiveQueryHub:
    def __init__(self):
        self._entries: Dict[Tuple, _SharedQuery] = {}
        self._lock = threading.RLock()

    def subscribe(
        self,
        query: LiveQuery,
        fetch: Callable[[], List[Any]],
        on_data: OnData,
        on_error: Optional[OnError] = None,
        authorize: Optional[Callable[[], None]] = None,
    ) -> Subscription:
        listener = _Listener(on_data, on_error, authorize)
        if authorize is not None:
            try:
                authorize()
            except PermissionDeniedError as e:
                self._report(listener, e)
                return Subscription(self, None, None)

        key = query.key
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _SharedQuery(query, fetch)
                self._entries[key] = entry
            entry.listeners.append(listener)
        sub = Subscription(self, key, listener)

        try:
            version, result = entry.evaluate()
        except PortalError as e:
            self._report(listener, e)
            return sub
        except Exception as e:
            self._report(listener, _wrap(e))
            return sub
        self._deliver(entry, listener, version, result)
        return sub

    def notify(self, entity: str, company_id: str):
        with self._lock:
            entries = [e for k, e in self._entries.items() if k[0] == entity and k[1] == company_id]
        for entry in entries:
            try:
                version, result = entry.evaluate()
            except Exception as e:
                err = e if isinstance(e, PortalError) else _wrap(e)
                with self._lock:
                    listeners = list(entry.listeners)
                for listener in listeners:
                    self._report(listener, err)
                continue
            with self._lock:
                listeners = list(entry.listeners)
            for listener in listeners:
                self._deliver(entry, listener, version, result)

    def active_queries(self) -> int:
        with self._lock:
            return len(self._entries)

    def listener_count(self, query: LiveQuery) -> int:
        with self._lock:
            entry = self._entries.get(query.key)
            return len(entry.listeners) if entry else 0

    def fetch_count(self, query: LiveQuery) -> int:
        with self._lock:
            entry = self._entries.get(query.key)
            return entry.fetch_count if entry else 0

    def close(self):
        with self._lock:
            self._entries.clear()

    def _deliver(self, entry: _SharedQuery, listener: _Listener, version: int, result: List[Any]):
        # a slower thread may arrive with an older evaluation; drop it
        if version <= listener.last_version:
            return
        if listener.authorize is not None:
            try:
                listener.authorize()
            except PermissionDeniedError as e:
                listener.cancelled = True
                self._detach(entry.query.key, listener)
                self._report(listener, e)
                return
        listener.last_version = version
        try:
            listener.on_data(list(result))
        except Exception:
            logger.exception("Live query listener failed for %s", entry.query.entity)

    def _report(self, listener: _Listener, err: PortalError):
        if listener.on_error is None:
            logger.warning("Unhandled live query error: %s", err.code)
            return
        try:
            listener.on_error(err)
        except Exception:
            logger.exception("Live query error handler failed")

    def _detach(self, key: Optional[Tuple], listener: _Listener):
        if key is None:
            return
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return
            if listener in entry.listeners:
                entry.listeners.remove(listener)
            if not entry.listeners:
                del self._entries[key]


def _wrap(e: Exception) -> PortalError:
    from sqlalchemy.exc import InterfaceError, OperationalError

    if isinstance(e, (OperationalError, InterfaceError)):
        return ConnectivityError(str(e))
    logger.exception("Live query evaluation failed", exc_info=e)
    return PortalError(str(e))
