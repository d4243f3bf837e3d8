import copy
import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional, Union
from uuid import uuid4

logger = logging.getLogger(__name__)

Listener = Callable[[list[dict]], None]
Number = Union[int, Decimal]


class DocumentStoreError(Exception):
    pass


class DocumentNotFoundError(DocumentStoreError):
    pass


class ConflictError(DocumentStoreError):
    pass


class UpstreamUnavailableError(DocumentStoreError):
    pass


def _matches(doc: dict, filters: Optional[dict]) -> bool:
    if not filters:
        return True
    for field_name, expected in filters.items():
        value = doc.get(field_name)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class _Subscription:
    def __init__(self, collection: str, callback: Listener, filters: Optional[dict],
                 order_by: Optional[str], descending: bool):
        self.collection = collection
        self.callback = callback
        self.filters = filters
        self.order_by = order_by
        self.descending = descending


_SET = "set"
_INCREMENT = "increment"


class WriteBatch:
    """Writes staged against a store and applied together on commit."""

    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self._creates: list[tuple[str, str, dict, dict]] = []
        self._writes: list[tuple[str, str, str, dict, Optional[int], Optional[Number]]] = []
        self.committed = False

    def create(self, collection: str, data: dict, doc_id: Optional[str] = None,
               copy_from: Optional[dict[str, tuple[str, str, str]]] = None) -> str:
        """
        Stage a new document.

        ``copy_from`` maps a field of the new document to
        ``(collection, doc_id, field)`` of an existing one; the value is read
        at commit time, after this batch's other writes have been applied.
        """
        doc_id = doc_id or uuid4().hex
        self._creates.append((collection, doc_id, copy.deepcopy(data), dict(copy_from or {})))
        return doc_id

    def update(self, collection: str, doc_id: str, fields: dict,
               expected_version: Optional[int] = None) -> None:
        self._writes.append((_SET, collection, doc_id, copy.deepcopy(fields), expected_version, None))

    def increment(self, collection: str, doc_id: str, deltas: dict[str, Number],
                  floor: Optional[Number] = None, expected_version: Optional[int] = None) -> None:
        """
        Add ``deltas`` to numeric fields against the value stored at commit.

        With ``floor`` set the commit fails with ConflictError when any of
        the incremented fields would end below it.
        """
        self._writes.append((_INCREMENT, collection, doc_id, dict(deltas), expected_version, floor))

    def commit(self) -> None:
        if self.committed:
            raise DocumentStoreError("Batch already committed")
        self._store._apply(self._creates, self._writes)
        self.committed = True


class InMemoryDocumentStore:
    """
    Thread-safe document store keyed by collection name.

    Documents are plain dicts carrying ``id`` and ``version``. Every write
    bumps ``version`` once per commit; updates given an ``expected_version``
    fail with ConflictError when the stored version has moved on. Increments
    are applied to the stored value under the lock and need no version.
    """

    def __init__(self):
        self._collections: dict[str, dict[str, dict]] = {}
        self._subscriptions: list[_Subscription] = []
        self._lock = threading.RLock()

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def require(self, collection: str, doc_id: str) -> dict:
        doc = self.get(collection, doc_id)
        if doc is None:
            raise DocumentNotFoundError(f"{collection}/{doc_id} not found")
        return doc

    def query(self, collection: str, filters: Optional[dict] = None,
              order_by: Optional[str] = None, descending: bool = False,
              limit: Optional[int] = None) -> list[dict]:
        with self._lock:
            docs = [
                copy.deepcopy(d) for d in self._collections.get(collection, {}).values()
                if _matches(d, filters)
            ]
        if order_by:
            docs.sort(key=lambda d: d.get(order_by), reverse=descending)
        if limit is not None:
            docs = docs[:limit]
        return docs

    def create(self, collection: str, data: dict, doc_id: Optional[str] = None) -> dict:
        batch = self.batch()
        doc_id = batch.create(collection, data, doc_id)
        batch.commit()
        return self.require(collection, doc_id)

    def update(self, collection: str, doc_id: str, fields: dict,
               expected_version: Optional[int] = None) -> dict:
        batch = self.batch()
        batch.update(collection, doc_id, fields, expected_version)
        batch.commit()
        return self.require(collection, doc_id)

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def subscribe(self, collection: str, callback: Listener, filters: Optional[dict] = None,
                  order_by: Optional[str] = None, descending: bool = False) -> Callable[[], None]:
        subscription = _Subscription(collection, callback, filters, order_by, descending)
        with self._lock:
            self._subscriptions.append(subscription)
        self._deliver(subscription)

        def unsubscribe() -> None:
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return unsubscribe

    def _apply(self, creates: Iterable[tuple[str, str, dict, dict]],
               writes: Iterable[tuple[str, str, str, dict, Optional[int], Optional[Number]]]) -> None:
        now = datetime.now(timezone.utc)
        touched: set[str] = set()
        with self._lock:
            for collection, doc_id, _, copy_from in creates:
                if doc_id in self._collections.get(collection, {}):
                    raise ConflictError(f"{collection}/{doc_id} already exists")
                for source_collection, source_id, _ in copy_from.values():
                    if source_id not in self._collections.get(source_collection, {}):
                        raise DocumentNotFoundError(f"{source_collection}/{source_id} not found")

            staged: dict[tuple[str, str], dict] = {}
            for kind, collection, doc_id, fields, expected_version, floor in writes:
                current = self._collections.get(collection, {}).get(doc_id)
                if current is None:
                    raise DocumentNotFoundError(f"{collection}/{doc_id} not found")
                if expected_version is not None and current["version"] != expected_version:
                    raise ConflictError(
                        f"{collection}/{doc_id} is at version {current['version']}, "
                        f"expected {expected_version}"
                    )
                doc = staged.setdefault((collection, doc_id), copy.deepcopy(current))
                if kind == _SET:
                    doc.update({k: v for k, v in fields.items() if k not in ("id", "version")})
                    continue
                for field_name, delta in fields.items():
                    value = doc.get(field_name, 0) + delta
                    if floor is not None and value < floor:
                        raise ConflictError(
                            f"{collection}/{doc_id} {field_name} would fall to {value}, below {floor}"
                        )
                    doc[field_name] = value

            for (collection, doc_id), doc in staged.items():
                doc["version"] += 1
                self._collections[collection][doc_id] = doc
                touched.add(collection)
            for collection, doc_id, data, copy_from in creates:
                doc = dict(data)
                for field_name, (source_collection, source_id, source_field) in copy_from.items():
                    doc[field_name] = copy.deepcopy(
                        self._collections[source_collection][source_id].get(source_field))
                doc["id"] = doc_id
                doc["version"] = 1
                doc.setdefault("created_at", now)
                self._collections.setdefault(collection, {})[doc_id] = doc
                touched.add(collection)

            listeners = [s for s in self._subscriptions if s.collection in touched]

        for subscription in listeners:
            self._deliver(subscription)

    def _deliver(self, subscription: _Subscription) -> None:
        results = self.query(
            subscription.collection,
            filters=subscription.filters,
            order_by=subscription.order_by,
            descending=subscription.descending,
        )
        try:
            subscription.callback(results)
        except Exception:
            logger.exception("Listener on %s failed", subscription.collection)
