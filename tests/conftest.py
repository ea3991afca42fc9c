"""
Shared fixtures: a small catalog snapshot and a scripted model backend.
"""

import pytest

from khobot.backends.base import BaseBackend, BackendResponse
from khobot.config import AISettings
from khobot.storage.catalog import SQLiteCatalog
from khobot.storage.sqlite_store import SQLiteStore


SNAPSHOT = {
    "storage_items": [
        {
            "_id": "i1", "code": "ABC123", "name": "Bánh quy bơ", "quantityPerBox": 12,
            "receivedQuantity": {"quantity": 100, "real": 100},
            "deliveredQuantity": {"quantity": 58, "real": 50},
            "restQuantity": {"quantity": 42},
        },
        {
            "_id": "i2", "code": "TK01", "name": "Thạch dừa", "quantityPerBox": 24,
            "restQuantity": {"quantity": 50, "real": 48},
        },
        {
            "_id": "i3", "code": "TK02", "name": "Thạch kem", "quantityPerBox": 0,
            "restQuantity": {"quantity": 7, "real": 7},
        },
        {
            "_id": "i4", "code": "OLD01", "name": "Kẹo cũ", "quantityPerBox": 10,
            "restQuantity": {"quantity": 5}, "deletedAt": "2025-01-01T00:00:00Z",
        },
    ],
    "products": [
        {"_id": "p1", "name": "Combo A", "items": [{"_id": "i1", "quantity": 2}, {"_id": "i2", "quantity": 1}]},
        {"_id": "p2", "name": "Combo cũ", "items": [], "deletedAt": "2025-01-01T00:00:00Z"},
    ],
    "storage_logs": [
        # legacy single-item entries
        {"_id": "l1", "status": "received", "date": "2025-11-01T08:00:00Z", "item": {"_id": "i1", "quantity": 100}},
        {"_id": "l2", "status": "delivered", "date": "2025-11-25T08:00:00Z", "item": {"_id": "i1", "quantity": 30}},
        # multi-item entries
        {
            "_id": "l3", "status": "delivered", "date": "2025-12-05T10:00:00Z", "note": "don 1",
            "items": [{"_id": "i1", "quantity": 20}, {"_id": "i2", "quantity": 6}],
        },
        {
            "_id": "l4", "status": "delivered", "date": "2025-12-21T00:00:00Z",
            "items": [{"_id": "i1", "quantity": 8}],
        },
        {
            "_id": "l5", "status": "returned", "date": "2025-12-10T09:00:00Z",
            "items": [{"_id": "i2", "quantity": 2}],
        },
    ],
}


class ScriptedBackend(BaseBackend):
    """Returns queued replies in order and keeps every request body."""

    def __init__(self, replies=None, usage=None):
        super().__init__(name="scripted", url="http://fake/v1")
        self.replies = list(replies or [])
        self.usage = usage if usage is not None else {"prompt_tokens": 100, "completion_tokens": 20}
        self.calls: list[dict] = []

    def queue(self, *replies):
        self.replies.extend(replies)

    async def forward(self, body: dict) -> BackendResponse:
        self.calls.append(body)
        reply = self.replies.pop(0) if self.replies else "ok"
        if isinstance(reply, BackendResponse):
            return reply
        return BackendResponse(
            ok=True,
            data={"choices": [{"message": {"content": reply}}], "usage": self.usage},
            backend_name=self.name,
        )


@pytest.fixture
def settings():
    return AISettings(model="gpt-test", api_key="sk-test")


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(str(tmp_path / "khobot.db"))


@pytest.fixture
def catalog(tmp_path):
    cat = SQLiteCatalog(str(tmp_path / "catalog.db"))
    cat.import_snapshot(SNAPSHOT)
    return cat


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def snapshot():
    return SNAPSHOT
