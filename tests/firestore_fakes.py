"""AppFirestoreStore が使う範囲だけを再現した Firestore フェイク。

- users: document().set(merge=True) / get()
- memory_items: where("owner_id") + order_by + limit/start_after + stream、
  document().get()/set()/update()、batch の set/delete/commit
- fail_on に "read"/"write"/"commit" を入れると ServiceUnavailable を送出する
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterator

from google.api_core import exceptions as gexc
from google.cloud import firestore


@dataclass
class FakeSnapshot:
    ref: "FakeDocument"
    data: dict[str, Any] | None

    @property
    def id(self) -> str:
        return self.ref.id

    @property
    def exists(self) -> bool:
        return self.data is not None

    @property
    def reference(self) -> "FakeDocument":
        return self.ref

    def to_dict(self) -> dict[str, Any] | None:
        return None if self.data is None else dict(self.data)


class FakeDocument:
    def __init__(self, client: "FakeFirestoreClient", collection: str, doc_id: str) -> None:
        self._client = client
        self.collection = collection
        self.id = doc_id

    @property
    def _bucket(self) -> dict[str, dict[str, Any]]:
        return self._client._data.setdefault(self.collection, {})

    def get(self) -> FakeSnapshot:
        self._client._maybe_fail("read")
        data = self._bucket.get(self.id)
        return FakeSnapshot(self, None if data is None else dict(data))

    def set(self, data: dict[str, Any], merge: bool = False) -> None:
        self._client._maybe_fail("write")
        if merge and self.id in self._bucket:
            self._bucket[self.id].update(data)
        else:
            self._bucket[self.id] = dict(data)

    def update(self, data: dict[str, Any]) -> None:
        self._client._maybe_fail("write")
        if self.id not in self._bucket:
            raise gexc.NotFound(f"document {self.collection}/{self.id} not found")
        self._bucket[self.id].update(data)


@dataclass(frozen=True)
class FakeQuery:
    client: "FakeFirestoreClient"
    collection: str
    filters: tuple[tuple[str, Any], ...] = ()
    orderings: tuple[tuple[str, bool], ...] = ()
    max_results: int | None = None
    after_id: str | None = None

    def where(self, field_path: str, op_string: str, value: Any) -> "FakeQuery":
        assert op_string == "==", op_string
        return replace(self, filters=self.filters + ((field_path, value),))

    def order_by(self, field_path: str, direction: str = firestore.Query.ASCENDING) -> "FakeQuery":
        descending = direction == firestore.Query.DESCENDING
        return replace(self, orderings=self.orderings + ((field_path, descending),))

    def limit(self, count: int) -> "FakeQuery":
        return replace(self, max_results=count)

    def start_after(self, snapshot: FakeSnapshot) -> "FakeQuery":
        return replace(self, after_id=snapshot.id)

    def stream(self) -> Iterator[FakeSnapshot]:
        self.client._maybe_fail("read")
        bucket = self.client._data.get(self.collection, {})
        rows = [
            (doc_id, data)
            for doc_id, data in bucket.items()
            if all(data.get(name) == value for name, value in self.filters)
        ]
        for name, descending in reversed(self.orderings):
            rows.sort(key=lambda row, name=name: row[0] if name == "__name__" else row[1].get(name), reverse=descending)
        ids = [doc_id for doc_id, _ in rows]
        if self.after_id in ids:
            rows = rows[ids.index(self.after_id) + 1 :]
        if self.max_results is not None:
            rows = rows[: self.max_results]
        for doc_id, data in rows:
            yield FakeSnapshot(FakeDocument(self.client, self.collection, doc_id), dict(data))


@dataclass
class FakeCollection:
    client: "FakeFirestoreClient"
    name: str

    def document(self, doc_id: str) -> FakeDocument:
        return FakeDocument(self.client, self.name, doc_id)

    def where(self, field_path: str, op_string: str, value: Any) -> FakeQuery:
        return FakeQuery(self.client, self.name).where(field_path, op_string, value)


@dataclass
class FakeBatch:
    client: "FakeFirestoreClient"
    writes: list[tuple[FakeDocument, dict[str, Any] | None]] = field(default_factory=list)

    def set(self, ref: FakeDocument, data: dict[str, Any]) -> None:
        self.writes.append((ref, dict(data)))

    def delete(self, ref: FakeDocument) -> None:
        self.writes.append((ref, None))

    def commit(self) -> None:
        self.client._maybe_fail("commit")
        self.client.commits += 1
        for ref, data in self.writes:
            bucket = self.client._data.setdefault(ref.collection, {})
            if data is None:
                bucket.pop(ref.id, None)
            else:
                bucket[ref.id] = data


class FakeFirestoreClient:
    def __init__(self) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self.fail_on: set[str] = set()
        self.commits = 0

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_on:
            raise gexc.ServiceUnavailable(f"injected {op} failure")

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self, name)

    def batch(self) -> FakeBatch:
        return FakeBatch(self)

    def documents(self, name: str) -> dict[str, dict[str, Any]]:
        return {doc_id: dict(data) for doc_id, data in self._data.get(name, {}).items()}
