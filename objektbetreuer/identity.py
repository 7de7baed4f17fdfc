import json
import logging
import os
import threading
from typing import Dict, Optional

from .database import get_session
from .models import AppUser, Role

logger = logging.getLogger("portal.identity")


class ProfileCache:
    """Last successfully resolved profile per principal.

    Lets a client render a known profile before a fresh lookup returns. When
    ``path`` is set the cache is mirrored to a JSON file so it survives a
    restart.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._data: Dict[str, dict] = {}
        self._lock = threading.Lock()
        if path and os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    self._data = json.load(f)
            except (OSError, ValueError):
                logger.exception("Could not read profile cache from %s", path)
                self._data = {}

    def get(self, principal_id: str) -> Optional[AppUser]:
        with self._lock:
            data = self._data.get(principal_id)
        if data is None:
            return None
        return AppUser.model_validate(data)

    def put(self, user: AppUser):
        data = user.model_dump(mode="json")
        with self._lock:
            if self._data.get(user.id) == data:
                return
            self._data[user.id] = data
            self._flush()

    def evict(self, principal_id: str):
        with self._lock:
            if self._data.pop(principal_id, None) is not None:
                self._flush()

    def _flush(self):
        if not self.path:
            return
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(self._data, f)
        except OSError:
            logger.exception("Could not write profile cache to %s", self.path)


class IdentityResolver:
    """Maps an authenticated principal to its AppUser profile, or None."""

    def __init__(self, engine, clock, cache: Optional[ProfileCache] = None):
        self.engine = engine
        self.clock = clock
        self.cache = cache or ProfileCache()

    def resolve(self, principal_id: str) -> Optional[AppUser]:
        try:
            user = self._lookup(principal_id)
        except Exception:
            # fail closed: any lookup problem means no profile
            logger.exception("Profile lookup failed for principal id=%s", principal_id)
            user = None
        if user is None:
            self.cache.evict(principal_id)
            return None
        self.cache.put(user)
        return user

    def cached(self, principal_id: str) -> Optional[AppUser]:
        return self.cache.get(principal_id)

    def record_login(self, principal_id: str):
        with get_session(self.engine) as s:
            user = s.get(AppUser, principal_id)
            if user:
                user.last_login = self.clock()
                s.add(user)
                s.commit()

    def on_principal_changed(self, principal_id: str, signed_in: bool):
        if not signed_in:
            self.cache.evict(principal_id)

    def _lookup(self, principal_id: str) -> Optional[AppUser]:
        if not principal_id:
            return None
        with get_session(self.engine) as s:
            user = s.get(AppUser, principal_id)
            if user is None or not user.is_active:
                return None
            if user.role == Role.employee:
                company = s.get(AppUser, user.company_id) if user.company_id else None
                if company is None or not company.is_active or company.role != Role.company:
                    return None
            return user
