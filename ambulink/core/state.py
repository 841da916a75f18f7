import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ambulink.core.domain import RequestState, TransportRequest
from ambulink.core.errors import NotFoundError


class RequestStore:
    """
    In-memory system of record for transport requests.

    Each request id gets its own lock; whoever mutates a request must hold it.
    The store lock only guards the maps themselves and is never held while a
    request lock is being waited on.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._requests: Dict[str, TransportRequest] = {}
        self._archive: Dict[str, TransportRequest] = {}
        self._request_locks: Dict[str, threading.Lock] = {}

    def add(self, request: TransportRequest) -> None:
        with self._lock:
            self._requests[request.request_id] = request
            self._request_locks[request.request_id] = threading.Lock()

    def lock_for(self, request_id: str) -> threading.Lock:
        with self._lock:
            lock = self._request_locks.get(request_id)
            if lock is None:
                raise NotFoundError(f"request {request_id} not found")
            return lock

    def get(self, request_id: str) -> TransportRequest:
        """Live object. Callers mutate it only while holding lock_for(request_id)."""
        with self._lock:
            request = self._requests.get(request_id) or self._archive.get(request_id)
            if request is None:
                raise NotFoundError(f"request {request_id} not found")
            return request

    def is_archived(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._archive

    def active(self) -> List[TransportRequest]:
        with self._lock:
            return list(self._requests.values())

    def all(self, state: Optional[RequestState] = None) -> List[TransportRequest]:
        with self._lock:
            rows = list(self._requests.values()) + list(self._archive.values())
        return [r for r in rows if state is None or r.state == state]

    def archive_settled(self, now: datetime, retention: timedelta) -> List[str]:
        """Move terminal requests whose retention window has passed to the archive."""
        moved: List[str] = []
        with self._lock:
            for request_id, request in list(self._requests.items()):
                settled_at = request.settled_at
                if request.state.is_terminal and settled_at is not None and settled_at + retention <= now:
                    self._archive[request_id] = self._requests.pop(request_id)
                    moved.append(request_id)
        return moved

    def purge_archived(self, now: datetime, horizon: timedelta) -> List[str]:
        """Forget archived requests settled longer than `horizon` ago, locks included."""
        purged: List[str] = []
        with self._lock:
            for request_id, request in list(self._archive.items()):
                if request.settled_at + horizon <= now:
                    del self._archive[request_id]
                    self._request_locks.pop(request_id, None)
                    purged.append(request_id)
        return purged

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)
