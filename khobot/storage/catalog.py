"""
Read-only view of the back office's business data.

The ask pipeline only ever reads inventory items, products (compositions)
and stock movement logs. `Catalog` is the interface it depends on;
`SQLiteCatalog` implements it over a local mirror that an admin refreshes
with `import_snapshot()` from a JSON export of the CRUD layer.

Name lookups compare folded text (no diacritics, lowercase) on both sides,
so "Thach kem" finds "Thạch kem".
"""

from __future__ import annotations

import abc
import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from khobot.storage.models import (
    Composition,
    InventoryItem,
    MovementEntry,
    StockLine,
    StockQuantity,
    to_iso,
)
from khobot.text import fold

logger = logging.getLogger(__name__)


@dataclass
class MovementQuery:
    """Which movement log entries to aggregate."""
    item_ids: list[str] = field(default_factory=list)
    status: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    def to_filter(self) -> dict:
        """Status/date part of the query as a plain filter document."""
        flt: dict = {}
        if self.status:
            flt["status"] = self.status
        if self.date_from or self.date_to:
            flt["date"] = {}
            if self.date_from:
                flt["date"]["gte"] = self.date_from
            if self.date_to:
                flt["date"]["lte"] = self.date_to
        return flt


class Catalog(abc.ABC):
    """Read-only business data consumed by the fact assembler."""

    @abc.abstractmethod
    def find_item_by_code(self, code: str) -> InventoryItem | None:
        """Exact, case-insensitive code match, excluding soft-deleted items."""
        ...

    @abc.abstractmethod
    def find_items_by_name(self, name: str, limit: int) -> list[InventoryItem]:
        """Substring name match, excluding soft-deleted items."""
        ...

    @abc.abstractmethod
    def get_items(self, item_ids: list[str]) -> dict[str, InventoryItem]:
        """Look up items by id (soft-deleted ones included, they still have names)."""
        ...

    @abc.abstractmethod
    def find_composition_by_name(self, name: str) -> Composition | None:
        """Exact, case-insensitive product name match, excluding soft-deleted."""
        ...

    @abc.abstractmethod
    def movement_totals(self, query: MovementQuery) -> tuple[int, float]:
        """(entry count, quantity attributed to query.item_ids) over matching entries."""
        ...

    @abc.abstractmethod
    def recent_movements(self, query: MovementQuery, limit: int) -> list[MovementEntry]:
        """Matching entries, most recent first."""
        ...


# ---------------------------------------------------------------------------
# SQLite mirror
# ---------------------------------------------------------------------------

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS storage_items (
    id TEXT PRIMARY KEY,
    code TEXT NOT NULL,
    name TEXT NOT NULL,
    quantity_per_box REAL NOT NULL DEFAULT 0,
    received_quantity REAL NOT NULL DEFAULT 0,
    received_real REAL NOT NULL DEFAULT 0,
    delivered_quantity REAL NOT NULL DEFAULT 0,
    delivered_real REAL NOT NULL DEFAULT 0,
    rest_quantity REAL NOT NULL DEFAULT 0,
    rest_real REAL NOT NULL DEFAULT 0,
    deleted_at TEXT DEFAULT NULL
);

CREATE TABLE IF NOT EXISTS products (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    deleted_at TEXT DEFAULT NULL
);

CREATE TABLE IF NOT EXISTS product_items (
    product_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    item_id TEXT NOT NULL,
    quantity REAL NOT NULL DEFAULT 0,
    PRIMARY KEY (product_id, position)
);

-- item_id/item_quantity: legacy single-item entries
CREATE TABLE IF NOT EXISTS storage_logs (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    date TEXT NOT NULL,
    note TEXT DEFAULT '',
    tag TEXT DEFAULT '',
    item_id TEXT DEFAULT NULL,
    item_quantity REAL DEFAULT NULL
);

CREATE TABLE IF NOT EXISTS storage_log_items (
    log_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    quantity REAL NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_storage_items_code ON storage_items(code);
CREATE INDEX IF NOT EXISTS idx_storage_logs_item ON storage_logs(item_id);
CREATE INDEX IF NOT EXISTS idx_storage_logs_date ON storage_logs(date);
CREATE INDEX IF NOT EXISTS idx_storage_log_items_item ON storage_log_items(item_id, log_id);
"""


def _placeholders(n: int) -> str:
    return ", ".join("?" * n)


def _ref(line: dict) -> str:
    """Item reference of a line: Mongo exports use _id, hand-written ones item."""
    return str(line.get("_id") or line.get("item") or line.get("itemRef") or "")


def _qty(block: dict | None) -> tuple[float, float]:
    block = block or {}
    return float(block.get("quantity") or 0), float(block.get("real") or 0)


def _date(value) -> str:
    """Normalize an exported date (ISO string, possibly with Z) to stored form."""
    if isinstance(value, dict) and "$date" in value:
        value = value["$date"]
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return to_iso(dt)


class SQLiteCatalog(Catalog):
    """Catalog over a local SQLite mirror of the inventory collections."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("Catalog initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        conn.create_function("fold", 1, lambda s: fold(s) if s is not None else None, deterministic=True)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> InventoryItem:
        return InventoryItem(
            id=row["id"],
            code=row["code"],
            name=row["name"],
            quantity_per_box=row["quantity_per_box"],
            received=StockQuantity(row["received_quantity"], row["received_real"]),
            delivered=StockQuantity(row["delivered_quantity"], row["delivered_real"]),
            rest=StockQuantity(row["rest_quantity"], row["rest_real"]),
            deleted_at=row["deleted_at"],
        )

    # ── Inventory ────────────────────────────────────────────────────────────

    def find_item_by_code(self, code: str) -> InventoryItem | None:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM storage_items
                   WHERE fold(code) = ? AND deleted_at IS NULL
                   LIMIT 1""",
                (fold(code.strip()),),
            ).fetchone()
        return self._row_to_item(row) if row else None

    def find_items_by_name(self, name: str, limit: int) -> list[InventoryItem]:
        needle = fold(name.strip())
        if not needle:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM storage_items
                   WHERE instr(fold(name), ?) > 0 AND deleted_at IS NULL
                   ORDER BY name
                   LIMIT ?""",
                (needle, limit),
            ).fetchall()
        return [self._row_to_item(r) for r in rows]

    def get_items(self, item_ids: list[str]) -> dict[str, InventoryItem]:
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return {}
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM storage_items WHERE id IN ({_placeholders(len(ids))})",
                ids,
            ).fetchall()
        return {r["id"]: self._row_to_item(r) for r in rows}

    # ── Products ─────────────────────────────────────────────────────────────

    def find_composition_by_name(self, name: str) -> Composition | None:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM products
                   WHERE fold(name) = ? AND deleted_at IS NULL
                   LIMIT 1""",
                (fold(name.strip()),),
            ).fetchone()
            if row is None:
                return None
            lines = conn.execute(
                "SELECT item_id, quantity FROM product_items WHERE product_id = ? ORDER BY position",
                (row["id"],),
            ).fetchall()
        return Composition(
            id=row["id"],
            name=row["name"],
            items=[StockLine(r["item_id"], r["quantity"]) for r in lines],
            deleted_at=row["deleted_at"],
        )

    # ── Movement logs ────────────────────────────────────────────────────────

    @staticmethod
    def _movement_where(query: MovementQuery) -> tuple[str, list]:
        """
        WHERE clause matching either the legacy single-item column or any
        row of the multi-item table, plus the optional status/date filters.
        """
        ph = _placeholders(len(query.item_ids))
        clauses = [
            f"""(l.item_id IN ({ph}) OR EXISTS (
                    SELECT 1 FROM storage_log_items li
                    WHERE li.log_id = l.id AND li.item_id IN ({ph})))"""
        ]
        params: list = list(query.item_ids) * 2
        if query.status:
            clauses.append("l.status = ?")
            params.append(query.status)
        if query.date_from:
            clauses.append("l.date >= ?")
            params.append(to_iso(query.date_from))
        if query.date_to:
            clauses.append("l.date <= ?")
            params.append(to_iso(query.date_to))
        return " AND ".join(clauses), params

    def movement_totals(self, query: MovementQuery) -> tuple[int, float]:
        if not query.item_ids:
            return 0, 0.0
        where, params = self._movement_where(query)
        ph = _placeholders(len(query.item_ids))
        # Only quantities of the matched items count; an entry may list others.
        attributed = f"""(
            CASE WHEN l.item_id IN ({ph}) THEN COALESCE(l.item_quantity, 0) ELSE 0 END
            + COALESCE((SELECT SUM(li.quantity) FROM storage_log_items li
                        WHERE li.log_id = l.id AND li.item_id IN ({ph})), 0))"""
        sql = (
            f"SELECT COUNT(*) AS total, COALESCE(SUM({attributed}), 0) AS total_quantity "
            f"FROM storage_logs l WHERE {where}"
        )
        with self._connect() as conn:
            row = conn.execute(sql, list(query.item_ids) * 2 + params).fetchone()
        logger.debug("movement_totals filter=%s ids=%d", query.to_filter(), len(query.item_ids))
        return int(row["total"]), float(row["total_quantity"])

    def recent_movements(self, query: MovementQuery, limit: int) -> list[MovementEntry]:
        if not query.item_ids:
            return []
        where, params = self._movement_where(query)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT l.* FROM storage_logs l WHERE {where} ORDER BY l.date DESC, l.id LIMIT ?",
                params + [limit],
            ).fetchall()
            log_ids = [r["id"] for r in rows]
            lines: dict[str, list[StockLine]] = {}
            if log_ids:
                for li in conn.execute(
                    f"""SELECT log_id, item_id, quantity FROM storage_log_items
                        WHERE log_id IN ({_placeholders(len(log_ids))}) ORDER BY rowid""",
                    log_ids,
                ):
                    lines.setdefault(li["log_id"], []).append(StockLine(li["item_id"], li["quantity"]))
        return [
            MovementEntry(
                id=r["id"],
                status=r["status"],
                date=r["date"],
                note=r["note"] or "",
                tag=r["tag"] or "",
                item=StockLine(r["item_id"], r["item_quantity"] or 0) if r["item_id"] else None,
                items=lines.get(r["id"], []),
            )
            for r in rows
        ]

    # ── Admin import ─────────────────────────────────────────────────────────

    def import_snapshot(self, snapshot: dict) -> dict:
        """
        Replace the mirror with a JSON export of the CRUD layer.

        Expected keys: storage_items, products, storage_logs (each a list of
        documents in the back office's own field names). Returns row counts.
        """
        items = snapshot.get("storage_items", [])
        products = snapshot.get("products", [])
        logs = snapshot.get("storage_logs", [])
        with self._connect() as conn:
            for table in ("storage_items", "products", "product_items",
                          "storage_logs", "storage_log_items"):
                conn.execute(f"DELETE FROM {table}")

            for doc in items:
                rec_q, rec_r = _qty(doc.get("receivedQuantity"))
                del_q, del_r = _qty(doc.get("deliveredQuantity"))
                rest_q, rest_r = _qty(doc.get("restQuantity"))
                conn.execute(
                    """INSERT INTO storage_items
                       (id, code, name, quantity_per_box, received_quantity, received_real,
                        delivered_quantity, delivered_real, rest_quantity, rest_real, deleted_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (str(doc.get("_id") or doc.get("id")), doc["code"], doc["name"],
                     float(doc.get("quantityPerBox") or 0), rec_q, rec_r, del_q, del_r,
                     rest_q, rest_r, doc.get("deletedAt")),
                )

            for doc in products:
                pid = str(doc.get("_id") or doc.get("id"))
                conn.execute(
                    "INSERT INTO products (id, name, deleted_at) VALUES (?, ?, ?)",
                    (pid, doc["name"], doc.get("deletedAt")),
                )
                conn.executemany(
                    "INSERT INTO product_items (product_id, position, item_id, quantity) VALUES (?, ?, ?, ?)",
                    [(pid, pos, _ref(line), float(line.get("quantity") or 0))
                     for pos, line in enumerate(doc.get("items") or [])],
                )

            for doc in logs:
                lid = str(doc.get("_id") or doc.get("id"))
                single = doc.get("item") or None
                conn.execute(
                    """INSERT INTO storage_logs (id, status, date, note, tag, item_id, item_quantity)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (lid, doc["status"], _date(doc["date"]), doc.get("note") or "",
                     doc.get("tag") or "",
                     _ref(single) if single else None,
                     float(single.get("quantity") or 0) if single else None),
                )
                conn.executemany(
                    "INSERT INTO storage_log_items (log_id, item_id, quantity) VALUES (?, ?, ?)",
                    [(lid, _ref(line), float(line.get("quantity") or 0))
                     for line in doc.get("items") or []],
                )

        counts = {"storage_items": len(items), "products": len(products), "storage_logs": len(logs)}
        logger.info("Catalog snapshot imported: %s", counts)
        return counts

    def import_file(self, path: str) -> dict:
        with open(path, encoding="utf-8") as f:
            return self.import_snapshot(json.load(f))
