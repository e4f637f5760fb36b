"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: import paths for the backend package and an
    in-memory stand-in for the motor database used by service tests.
"""

from __future__ import annotations

import copy
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from bson import ObjectId

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]

if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

_MISSING = object()


def _path_values(doc: Any, dotted: str) -> list[Any]:
    """All values reachable by a dotted path, fanning out over arrays like Mongo does."""
    current = [doc]
    for part in dotted.split("."):
        nxt = []
        for node in current:
            if isinstance(node, dict):
                if part in node:
                    nxt.append(node[part])
            elif isinstance(node, list) and part.isdigit():
                if int(part) < len(node):
                    nxt.append(node[int(part)])
            elif isinstance(node, list):
                for item in node:
                    if isinstance(item, dict) and part in item:
                        nxt.append(item[part])
        current = nxt
    flat: list[Any] = []
    for value in current:
        if isinstance(value, list):
            flat.extend(value)
        flat.append(value)
    return flat


def _matches_condition(values: list[Any], condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$in":
                if not any(v in arg for v in values):
                    return False
            elif op == "$nin":
                if any(v in arg for v in values):
                    return False
            elif op == "$ne":
                if any(v == arg for v in values):
                    return False
            elif op == "$exists":
                if bool(values) != bool(arg):
                    return False
            elif op == "$gte":
                if not any(v is not None and v >= arg for v in values):
                    return False
            elif op == "$lte":
                if not any(v is not None and v <= arg for v in values):
                    return False
            else:
                raise NotImplementedError(op)
        return True
    return any(v == condition for v in values)


def matches_query(doc: dict, query: dict | None) -> bool:
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches_query(doc, sub) for sub in condition):
                return False
            continue
        if not _matches_condition(_path_values(doc, key), condition):
            return False
    return True


def _set_path(doc: dict, dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    node: Any = doc
    for part in parts[:-1]:
        node = node[int(part)] if isinstance(node, list) else node.setdefault(part, {})
    if isinstance(node, list):
        node[int(parts[-1])] = value
    else:
        node[parts[-1]] = value


def _get_path(doc: dict, dotted: str) -> Any:
    node: Any = doc
    for part in dotted.split("."):
        if isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        elif not isinstance(node, dict) or part not in node:
            return _MISSING
        else:
            node = node[part]
    return node


def _apply_update(doc: dict, update: dict) -> None:
    for key, value in (update.get("$set") or {}).items():
        _set_path(doc, key, copy.deepcopy(value))
    for key, value in (update.get("$inc") or {}).items():
        current = _get_path(doc, key)
        _set_path(doc, key, (0 if current is _MISSING else current) + value)
    for key in (update.get("$unset") or {}):
        parts = key.split(".")
        node = doc
        for part in parts[:-1]:
            node = node.get(part, {})
        node.pop(parts[-1], None)


class FakeCursor:
    def __init__(self, docs: list[dict]):
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def sort(self, key, direction: int = 1):
        keys = key if isinstance(key, list) else [(key, direction)]

        def sort_key(doc: dict, field: str):
            value = _get_path(doc, field)
            if value is _MISSING or value is None:
                return (1, 0)
            return (0, value)

        for field, order in reversed(keys):
            self._docs = sorted(self._docs, key=lambda d, f=field: sort_key(d, f), reverse=order < 0)
        return self

    def skip(self, value: int):
        self._skip = value
        return self

    def limit(self, value: int):
        self._limit = value
        return self

    def _window(self) -> list[dict]:
        docs = self._docs[self._skip:]
        if self._limit:
            docs = docs[:self._limit]
        return [copy.deepcopy(d) for d in docs]

    async def to_list(self, length: int | None = None):
        docs = self._window()
        return docs if length is None else docs[:length]

    def __aiter__(self):
        self._iter = iter(self._window())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs: list[dict] = []

    def _find_doc(self, query: dict) -> dict | None:
        for doc in self.docs:
            if matches_query(doc, query):
                return doc
        return None

    async def find_one(self, query: dict | None = None, projection=None, session=None):
        doc = self._find_doc(query or {})
        return copy.deepcopy(doc) if doc is not None else None

    def find(self, query: dict | None = None, projection=None, session=None):
        return FakeCursor([d for d in self.docs if matches_query(d, query or {})])

    async def insert_one(self, doc: dict, session=None):
        doc.setdefault("_id", ObjectId())
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def insert_many(self, docs: list[dict], session=None):
        ids = []
        for doc in docs:
            result = await self.insert_one(doc)
            ids.append(result.inserted_id)
        return SimpleNamespace(inserted_ids=ids)

    async def update_one(self, query: dict, update: dict, upsert: bool = False, session=None):
        doc = self._find_doc(query)
        if doc is not None:
            _apply_update(doc, update)
            return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if not upsert:
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        doc = {k: copy.deepcopy(v) for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
        doc.setdefault("_id", ObjectId())
        for key, value in (update.get("$setOnInsert") or {}).items():
            _set_path(doc, key, copy.deepcopy(value))
        _apply_update(doc, update)
        self.docs.append(doc)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])

    async def delete_one(self, query: dict, session=None):
        doc = self._find_doc(query)
        if doc is None:
            return SimpleNamespace(deleted_count=0)
        self.docs.remove(doc)
        return SimpleNamespace(deleted_count=1)

    async def delete_many(self, query: dict, session=None):
        keep = [d for d in self.docs if not matches_query(d, query)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return SimpleNamespace(deleted_count=deleted)

    async def count_documents(self, query: dict, session=None):
        return sum(1 for d in self.docs if matches_query(d, query))

    async def distinct(self, field: str, query: dict | None = None, session=None):
        seen: list[Any] = []
        for doc in self.docs:
            if not matches_query(doc, query or {}):
                continue
            for value in _path_values(doc, field):
                if not isinstance(value, list) and value not in seen:
                    seen.append(value)
        return seen


class FakeDB:
    def __init__(self):
        self._collections: dict[str, FakeCollection] = {}

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    async def command(self, name: str):
        return {"ok": 1.0}


@pytest.fixture
def fake_db(monkeypatch):
    """Replace app.database.db with an in-memory database and run scopes sequentially."""
    import app.database as _db
    from app.services import atomic_scope

    db = FakeDB()
    monkeypatch.setattr(_db, "db", db, raising=False)
    atomic_scope.configure(transactions_enabled=False)
    return db


def _markets(home: str, away: str, home_price=1.90, away_price=1.95, spread=-5.5, total=45.5) -> list[dict]:
    return [
        {"key": "h2h", "outcomes": [
            {"name": home, "price": home_price},
            {"name": away, "price": away_price},
        ]},
        {"key": "spreads", "outcomes": [
            {"name": home, "price": 1.91, "point": spread},
            {"name": away, "price": 1.91, "point": -spread},
        ]},
        {"key": "totals", "outcomes": [
            {"name": "Over", "price": 1.87, "point": total},
            {"name": "Under", "price": 1.95, "point": total},
        ]},
    ]


@pytest.fixture
def make_account(fake_db):
    from app.utils import utcnow
    from app.utils.money import to_decimal128

    def _make(balance: str = "1000.00", pending: str = "0.00", **extra) -> dict:
        doc = {
            "_id": ObjectId(),
            "username": f"player-{len(fake_db.accounts.docs) + 1}",
            "role": "user",
            "status": "active",
            "balance": to_decimal128(balance),
            "initial_balance": to_decimal128(balance),
            "pending_balance": to_decimal128(pending),
            "total_wagered": to_decimal128("0"),
            "total_winnings": to_decimal128("0"),
            "bet_count": 0,
            "created_at": utcnow(),
            **extra,
        }
        fake_db.accounts.docs.append(doc)
        return copy.deepcopy(doc)

    return _make


@pytest.fixture
def make_match(fake_db):
    from datetime import timedelta

    from app.utils import utcnow

    def _make(home: str = "Boston Celtics", away: str = "Miami Heat", **extra) -> dict:
        odds_kwargs = {k: extra.pop(k) for k in ("home_price", "away_price", "spread", "total") if k in extra}
        doc = {
            "_id": ObjectId(),
            "external_id": f"evt-{len(fake_db.matches.docs) + 1}",
            "sport": "basketball_nba",
            "home_team": home,
            "away_team": away,
            "start_time": utcnow() + timedelta(days=1),
            "status": "scheduled",
            "score": {},
            "odds": {"bookmaker": "FanDuel", "markets": _markets(home, away, **odds_kwargs)},
            **extra,
        }
        fake_db.matches.docs.append(doc)
        return copy.deepcopy(doc)

    return _make


def finish_match(db: FakeDB, match_id, home: int, away: int) -> None:
    for doc in db.matches.docs:
        if doc["_id"] == match_id:
            doc["status"] = "finished"
            doc["score"] = {"home": home, "away": away, "event_status": "FINAL"}
            return
    raise KeyError(match_id)


@pytest.fixture
def finish():
    """finish(db, match_id, home, away): mark a stored match final with the given score."""
    return finish_match
