"""Document store abstraction.

Every document carries a version. Writers send the version they last read;
a commit succeeds only if every document in it is still at that version, and
then all of them are written together. A new document is written with
expected version 0.
"""
from __future__ import annotations

import copy
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence

from .errors import ConcurrentModification

logger = logging.getLogger(__name__)

Predicate = Callable[[Dict[str, Any]], bool]


@dataclass(frozen=True)
class Document:
    collection: str
    doc_id: str
    version: int
    body: Dict[str, Any]


@dataclass(frozen=True)
class Write:
    collection: str
    doc_id: str
    body: Dict[str, Any]
    expected_version: int = 0


class Subscription(Protocol):
    def __iter__(self) -> Iterator[Document]: ...

    def get(self, timeout: Optional[float] = None) -> Optional[Document]: ...

    def close(self) -> None: ...


class DocumentStore(Protocol):
    def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

    def query(
        self,
        collection: str,
        match: Optional[Dict[str, Any]] = None,
        predicate: Optional[Predicate] = None,
    ) -> List[Document]: ...

    def doc_ids(self, collection: str, prefix: str = "") -> List[str]: ...

    def commit(self, writes: Sequence[Write]) -> List[int]: ...

    def subscribe(self, collection: str) -> Subscription: ...


def matches(body: Dict[str, Any], match: Optional[Dict[str, Any]]) -> bool:
    if not match:
        return True
    return all(body.get(k) == v for k, v in match.items())


_CLOSED = object()


class QueueSubscription:
    """Change feed consumer backed by an unbounded queue."""

    def __init__(self, collection: str, on_close: Callable[["QueueSubscription"], None]):
        self.collection = collection
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._on_close = on_close
        self._closed = threading.Event()

    def push(self, doc: Document) -> None:
        if not self._closed.is_set():
            self._queue.put(doc)

    def get(self, timeout: Optional[float] = None) -> Optional[Document]:
        if self._closed.is_set() and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        return None if item is _CLOSED else item

    def __iter__(self) -> Iterator[Document]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._on_close(self)
        self._queue.put(_CLOSED)


class MemoryStore:
    """Thread-safe in-process store used by tests and the dev server."""

    def __init__(self) -> None:
        self._docs: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()
        self._subscribers: Dict[str, List[QueueSubscription]] = {}

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._docs.get(collection, {}).get(doc_id)
            return copy.deepcopy(doc) if doc else None

    def query(self, collection, match=None, predicate=None) -> List[Document]:
        with self._lock:
            docs = list(self._docs.get(collection, {}).values())
        out = []
        for doc in docs:
            if matches(doc.body, match) and (predicate is None or predicate(doc.body)):
                out.append(copy.deepcopy(doc))
        return out

    def doc_ids(self, collection: str, prefix: str = "") -> List[str]:
        with self._lock:
            return [d for d in self._docs.get(collection, {}) if d.startswith(prefix)]

    def commit(self, writes: Sequence[Write]) -> List[int]:
        with self._lock:
            for w in writes:
                current = self._docs.get(w.collection, {}).get(w.doc_id)
                current_version = current.version if current else 0
                if current_version != w.expected_version:
                    logger.warning(
                        "version conflict on %s/%s: expected %s, found %s",
                        w.collection, w.doc_id, w.expected_version, current_version,
                    )
                    raise ConcurrentModification(w.collection, w.doc_id, w.expected_version)

            written = []
            for w in writes:
                doc = Document(w.collection, w.doc_id, w.expected_version + 1, copy.deepcopy(w.body))
                self._docs.setdefault(w.collection, {})[w.doc_id] = doc
                written.append(doc)
            subscribers = {c: list(subs) for c, subs in self._subscribers.items()}

        for doc in written:
            for sub in subscribers.get(doc.collection, []):
                sub.push(copy.deepcopy(doc))
        return [doc.version for doc in written]

    def subscribe(self, collection: str) -> QueueSubscription:
        sub = QueueSubscription(collection, self._unsubscribe)
        with self._lock:
            self._subscribers.setdefault(collection, []).append(sub)
        return sub

    def _unsubscribe(self, sub: QueueSubscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.collection, [])
            if sub in subs:
                subs.remove(sub)

    def ping(self) -> bool:
        return True
