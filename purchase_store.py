"""Local SQLite store for purchase orders and the reference caches.

One connection is shared by every caller; writes are serialized through a
re-entrant lock and multi-statement writes run inside ``BEGIN IMMEDIATE``
transactions. The schema is versioned with ``PRAGMA user_version`` and
upgraded on open by the ordered ``MIGRATIONS`` list; any table or column
still missing afterwards is recreated by the idempotent ``REPAIRS`` steps.
"""
from __future__ import annotations

import datetime as dt
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from reconcile import prunable_rows, remote_id_of

log = logging.getLogger(__name__)

STATUSES = ('ordered', 'pending', 'partial', 'received', 'cancelled')
DISCOUNT_TYPES = ('fixed', 'percentage')

HEADER_FIELDS = (
    'transaction_date', 'ref_no', 'contact_id', 'location_id', 'status',
    'tax_id', 'discount_amount', 'discount_type', 'additional_notes',
    'shipping_details', 'shipping_charges', 'total_before_tax', 'tax_amount',
    'final_total',
)
LINE_FIELDS = (
    'product_id', 'variation_id', 'quantity', 'unit_price',
    'line_discount_amount', 'line_discount_type', 'item_tax_id', 'item_tax',
    'sub_unit_id', 'lot_number', 'mfg_date', 'exp_date',
    'purchase_order_line_id', 'purchase_requisition_line_id',
)
HEADER_DEFAULTS = {'discount_amount': 0.0, 'tax_amount': 0.0, 'shipping_charges': 0.0}
LINE_DEFAULTS = {'quantity': 1, 'line_discount_amount': 0.0, 'line_discount_type': 'fixed', 'item_tax': 0.0}
PAYMENT_FIELDS = ('payment_id', 'method', 'amount', 'note', 'account_id', 'paid_on')

CACHE_TABLES = {
    'suppliers': 'cached_suppliers',
    'products': 'cached_products',
    'locations': 'cached_locations',
}
CACHE_SEARCH_COLUMNS = {
    'suppliers': ('name', 'business_name', 'contact_id'),
    'products': ('product_name', 'sub_sku'),
    'locations': ('name',),
}
CACHE_ORDER_COLUMN = {
    'suppliers': 'name',
    'products': 'product_name',
    'locations': 'name',
}
CACHE_REFRESH_KEY = 'cache_last_refresh'


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def last_sync_key(entity: str) -> str:
    if entity not in CACHE_TABLES:
        raise ValueError(f"Unknown reference entity: {entity}")
    return f"{entity}_last_sync"


def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


# ---------- SCHEMA ----------
def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (name,)).fetchone()
    return row is not None


def _has_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    return any(r["name"] == column for r in conn.execute(f"PRAGMA table_info({table})"))


def _rebuild_legacy_table(conn: sqlite3.Connection, name: str, backup: str):
    """Move an old-install table aside, recreate it and copy its rows back."""
    if not _table_exists(conn, name) or _table_exists(conn, backup):
        return
    ddl = conn.execute("SELECT sql FROM sqlite_master WHERE type='table' AND name=?", (name,)).fetchone()["sql"]
    conn.execute(f"ALTER TABLE {name} RENAME TO {backup}")
    conn.execute(ddl)
    conn.execute(f"INSERT INTO {name} SELECT * FROM {backup}")


def _migrate_system(conn: sqlite3.Connection):
    conn.execute("""
        CREATE TABLE IF NOT EXISTS system (
          id     INTEGER PRIMARY KEY AUTOINCREMENT,
          keyId  INTEGER DEFAULT null,
          key    TEXT,
          value  TEXT
        )
    """)


def _migrate_legacy_sell_lines(conn: sqlite3.Connection):
    _rebuild_legacy_table(conn, "sell_lines", "prev_sell_line")


def _migrate_legacy_variations(conn: sqlite3.Connection):
    _rebuild_legacy_table(conn, "variations", "prev_variations")


def _migrate_purchase_tables(conn: sqlite3.Connection):
    conn.execute("""
        CREATE TABLE IF NOT EXISTS purchase (
          id                INTEGER PRIMARY KEY AUTOINCREMENT,
          transaction_date  TEXT,
          ref_no            TEXT,
          contact_id        INTEGER,
          location_id       INTEGER,
          status            TEXT,
          tax_id            INTEGER,
          discount_amount   REAL,
          discount_type     TEXT,
          additional_notes  TEXT,
          shipping_charges  REAL DEFAULT 0.00,
          total_before_tax  REAL,
          tax_amount        REAL,
          final_total       REAL,
          is_synced         INTEGER DEFAULT 0,
          transaction_id    INTEGER DEFAULT null
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS purchase_lines (
          id                            INTEGER PRIMARY KEY AUTOINCREMENT,
          purchase_id                   INTEGER,
          product_id                    INTEGER,
          variation_id                  INTEGER,
          quantity                      REAL,
          unit_price                    REAL,
          line_discount_amount          REAL,
          line_discount_type            TEXT,
          item_tax_id                   INTEGER,
          item_tax                      REAL,
          sub_unit_id                   INTEGER,
          lot_number                    TEXT,
          mfg_date                      TEXT,
          exp_date                      TEXT,
          purchase_order_line_id        INTEGER,
          purchase_requisition_line_id  INTEGER
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS purchase_payments (
          id           INTEGER PRIMARY KEY AUTOINCREMENT,
          purchase_id  INTEGER,
          payment_id   INTEGER DEFAULT null,
          method       TEXT,
          amount       REAL,
          note         TEXT,
          account_id   INTEGER DEFAULT null,
          paid_on      TEXT
        )
    """)


def _migrate_cache_tables(conn: sqlite3.Connection):
    conn.execute("""
        CREATE TABLE IF NOT EXISTS cached_suppliers (
          id               INTEGER PRIMARY KEY,
          name             TEXT,
          business_name    TEXT,
          mobile           TEXT,
          address_line_1   TEXT,
          city             TEXT,
          state            TEXT,
          country          TEXT,
          zip_code         TEXT,
          contact_id       TEXT,
          pay_term_type    TEXT,
          pay_term_number  INTEGER,
          balance          REAL,
          last_sync        TEXT
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS cached_products (
          id                      INTEGER PRIMARY KEY AUTOINCREMENT,
          product_id              INTEGER,
          product_name            TEXT,
          product_type            TEXT,
          variation_id            INTEGER,
          variation_name          TEXT,
          sub_sku                 TEXT,
          default_purchase_price  REAL,
          last_sync               TEXT
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS cached_locations (
          id           INTEGER PRIMARY KEY,
          name         TEXT,
          location_id  TEXT,
          address      TEXT,
          city         TEXT,
          state        TEXT,
          country      TEXT,
          zip_code     TEXT,
          last_sync    TEXT
        )
    """)


def _migrate_shipping_details(conn: sqlite3.Connection):
    if not _has_column(conn, "purchase", "shipping_details"):
        conn.execute("ALTER TABLE purchase ADD COLUMN shipping_details TEXT")


def _migrate_sync_bookkeeping(conn: sqlite3.Connection):
    for col, decl in (
        ("sync_attempts", "INTEGER DEFAULT 0"),
        ("last_sync_error", "TEXT"),
        ("updated_at", "TEXT"),
    ):
        if not _has_column(conn, "purchase", col):
            conn.execute(f"ALTER TABLE purchase ADD COLUMN {col} {decl}")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_purchase_synced ON purchase(is_synced)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_purchase_txn ON purchase(transaction_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_purchase_lines_owner ON purchase_lines(purchase_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_purchase_payments_owner ON purchase_payments(purchase_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_system_key ON system(key)")


# Order matters: each entry upgrades the schema from version N-1 to N.
MIGRATIONS = (
    _migrate_system,
    _migrate_legacy_sell_lines,
    _migrate_legacy_variations,
    _migrate_purchase_tables,
    _migrate_cache_tables,
    _migrate_shipping_details,
    _migrate_sync_bookkeeping,
)
SCHEMA_VERSION = len(MIGRATIONS)

# Idempotent steps re-applied whenever a table or column they own is missing.
# Older installs stamped user_version up to 9 without these objects.
REPAIRS = (
    _migrate_system,
    _migrate_purchase_tables,
    _migrate_cache_tables,
    _migrate_shipping_details,
    _migrate_sync_bookkeeping,
)
REQUIRED_TABLES = ('system', 'purchase', 'purchase_lines', 'purchase_payments') + tuple(CACHE_TABLES.values())
REQUIRED_PURCHASE_COLUMNS = ('shipping_details', 'sync_attempts', 'last_sync_error', 'updated_at')


def missing_schema_objects(conn: sqlite3.Connection) -> List[str]:
    missing = [t for t in REQUIRED_TABLES if not _table_exists(conn, t)]
    if 'purchase' not in missing:
        missing.extend(f"purchase.{c}" for c in REQUIRED_PURCHASE_COLUMNS if not _has_column(conn, 'purchase', c))
    return missing


# ---------- ROW HELPERS ----------
def _validate_header(fields: Dict[str, Any]):
    status = fields.get('status')
    if status is not None and status not in STATUSES:
        raise ValueError(f"Invalid purchase status: {status}")
    discount_type = fields.get('discount_type')
    if discount_type not in (None, '') and discount_type not in DISCOUNT_TYPES:
        raise ValueError(f"Invalid discount type: {discount_type}")


def _validate_line(line: Dict[str, Any]):
    qty = line.get('quantity')
    if qty is not None and float(qty) < 0:
        raise ValueError("Line quantity must not be negative")


def _pick(src: Dict[str, Any], fields: Sequence[str]) -> Dict[str, Any]:
    return {k: src[k] for k in fields if k in src}


def _supplier_row(src: Dict[str, Any], stamp: str) -> Dict[str, Any]:
    return {
        'id': src.get('id'),
        'name': src.get('name') or src.get('text') or '',
        'business_name': src.get('business_name') or '',
        'mobile': src.get('mobile') or '',
        'address_line_1': src.get('address_line_1') or '',
        'city': src.get('city') or '',
        'state': src.get('state') or '',
        'country': src.get('country') or '',
        'zip_code': src.get('zip_code') or '',
        'contact_id': src.get('contact_id') or '',
        'pay_term_type': src.get('pay_term_type') or '',
        'pay_term_number': src.get('pay_term_number') or 0,
        'balance': src.get('balance') or 0.0,
        'last_sync': stamp,
    }


def _product_row(src: Dict[str, Any], stamp: str) -> Dict[str, Any]:
    return {
        'product_id': src.get('product_id') if src.get('product_id') is not None else src.get('id'),
        'product_name': src.get('product_name') or src.get('name') or '',
        'product_type': src.get('product_type') or src.get('type') or '',
        'variation_id': src.get('variation_id'),
        'variation_name': src.get('variation_name') or '',
        'sub_sku': src.get('sub_sku') or src.get('sku') or '',
        'default_purchase_price': src.get('default_purchase_price') or 0.0,
        'last_sync': stamp,
    }


def _location_row(src: Dict[str, Any], stamp: str) -> Dict[str, Any]:
    return {
        'id': src.get('id'),
        'name': src.get('name') or '',
        'location_id': src.get('location_id') or src.get('id'),
        'address': src.get('address') or src.get('landmark') or '',
        'city': src.get('city') or '',
        'state': src.get('state') or '',
        'country': src.get('country') or '',
        'zip_code': src.get('zip_code') or '',
        'last_sync': stamp,
    }


_CACHE_ROW_BUILDERS = {
    'suppliers': _supplier_row,
    'products': _product_row,
    'locations': _location_row,
}


def _escape_like(term: str) -> str:
    return term.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


class PurchaseStore:
    """Purchase headers, lines, payments, reference caches and the system table."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._lock = threading.RLock()
        self._depth = 0
        self._header_locks: Dict[int, threading.RLock] = {}
        self._header_locks_guard = threading.Lock()
        self.migrate()

    @classmethod
    def open(cls, db_path: str) -> "PurchaseStore":
        return cls(connect(db_path))

    def close(self):
        with self._lock:
            self.conn.close()

    # ---------- plumbing ----------
    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return
            self.conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self.conn
            except BaseException:
                self._depth = 0
                self.conn.rollback()
                raise
            self._depth = 0
            self.conn.commit()

    @contextmanager
    def header_lock(self, local_id: int) -> Iterator[None]:
        """Critical section for one header; acquire before the store lock."""
        with self._header_locks_guard:
            lock = self._header_locks.setdefault(int(local_id), threading.RLock())
        with lock:
            yield

    def _forget_header_lock(self, local_id: int):
        with self._header_locks_guard:
            self._header_locks.pop(int(local_id), None)

    def _rows(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self.conn.execute(sql, tuple(params)).fetchall()]

    def _one(self, sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(sql, tuple(params)).fetchone()
        return dict(row) if row else None

    def schema_version(self) -> int:
        with self._lock:
            return int(self.conn.execute("PRAGMA user_version").fetchone()[0])

    def migrate(self) -> int:
        version = self.schema_version()
        for target, step in enumerate(MIGRATIONS, start=1):
            if target <= version:
                continue
            with self.transaction() as conn:
                step(conn)
                conn.execute(f"PRAGMA user_version = {target}")
        with self.transaction() as conn:
            missing = missing_schema_objects(conn)
            if missing:
                log.info("Repairing schema at version %d, missing: %s", version, ", ".join(missing))
                for step in REPAIRS:
                    step(conn)
        return self.schema_version()

    # ---------- system key/value ----------
    def get_value(self, key: str) -> Optional[str]:
        row = self._one("SELECT value FROM system WHERE key=? ORDER BY id DESC LIMIT 1", (key,))
        return row["value"] if row else None

    def set_value(self, key: str, value: Optional[str]):
        with self.transaction() as conn:
            cur = conn.execute("UPDATE system SET value=? WHERE key=?", (value, key))
            if cur.rowcount == 0:
                conn.execute("INSERT INTO system (key, value) VALUES (?, ?)", (key, value))

    def delete_value(self, key: str):
        with self.transaction() as conn:
            conn.execute("DELETE FROM system WHERE key=?", (key,))

    # ---------- headers ----------
    def create_purchase(self, header: Dict[str, Any], lines: Sequence[Dict[str, Any]] = (),
                        payments: Sequence[Dict[str, Any]] = ()) -> int:
        """Store a new unsynced purchase with its lines and payments; returns the local id."""
        fields = dict(HEADER_DEFAULTS)
        fields.update({k: v for k, v in _pick(header, HEADER_FIELDS).items() if v is not None})
        _validate_header(fields)
        for line in lines:
            _validate_line(line)
        fields.update({'is_synced': 0, 'transaction_id': None, 'updated_at': iso_now()})
        with self.transaction() as conn:
            cols = ", ".join(fields)
            marks = ", ".join("?" for _ in fields)
            cur = conn.execute(f"INSERT INTO purchase ({cols}) VALUES ({marks})", tuple(fields.values()))
            local_id = int(cur.lastrowid)
            self._insert_lines(conn, local_id, lines)
            self._insert_payments(conn, local_id, payments)
        return local_id

    def get_header(self, local_id: int) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM purchase WHERE id=?", (local_id,))

    def header_by_remote_id(self, remote_id: Any) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM purchase WHERE transaction_id=? ORDER BY id LIMIT 1", (remote_id,))

    def list_headers(self, status: Optional[str] = None, contact_id: Optional[Any] = None,
                     location_id: Optional[Any] = None, synced: Optional[bool] = None) -> List[Dict[str, Any]]:
        where, params = ["1=1"], []
        if status:
            where.append("status=?")
            params.append(status)
        if contact_id is not None:
            where.append("contact_id=?")
            params.append(contact_id)
        if location_id is not None:
            where.append("location_id=?")
            params.append(location_id)
        if synced is not None:
            where.append("is_synced=?")
            params.append(1 if synced else 0)
        return self._rows(f"SELECT * FROM purchase WHERE {' AND '.join(where)} ORDER BY id DESC", params)

    def unsynced(self) -> List[Dict[str, Any]]:
        return self._rows("SELECT * FROM purchase WHERE is_synced=0 ORDER BY id ASC")

    def remote_ids(self) -> List[Any]:
        return [r["transaction_id"] for r in self._rows(
            "SELECT transaction_id FROM purchase WHERE transaction_id IS NOT NULL ORDER BY id")]

    def search_headers(self, term: str) -> List[Dict[str, Any]]:
        """Match ref_no or the cached supplier name/business name."""
        pattern = f"%{_escape_like(term or '')}%"
        return self._rows("""
            SELECT p.* FROM purchase p
            LEFT JOIN cached_suppliers s ON s.id = p.contact_id
            WHERE p.ref_no LIKE ? ESCAPE '\\'
               OR s.name LIKE ? ESCAPE '\\'
               OR s.business_name LIKE ? ESCAPE '\\'
            ORDER BY p.id DESC
        """, (pattern, pattern, pattern))

    def update_header(self, local_id: int, changes: Dict[str, Any]) -> bool:
        """Apply a local edit; the header becomes unsynced but keeps its remote id."""
        locked = {'id', 'transaction_id', 'is_synced'} & set(changes)
        if locked:
            raise ValueError(f"Fields not editable: {', '.join(sorted(locked))}")
        fields = _pick(changes, HEADER_FIELDS)
        if not fields:
            return False
        _validate_header(fields)
        with self.header_lock(local_id), self.transaction() as conn:
            fields.update({'is_synced': 0, 'updated_at': iso_now()})
            assigns = ", ".join(f"{k}=?" for k in fields)
            cur = conn.execute(f"UPDATE purchase SET {assigns} WHERE id=?", (*fields.values(), local_id))
            return cur.rowcount > 0

    def set_status(self, local_id: int, status: str) -> bool:
        """Status change already confirmed remotely; the sync flag is left as it is."""
        _validate_header({'status': status})
        with self.header_lock(local_id), self.transaction() as conn:
            cur = conn.execute("UPDATE purchase SET status=?, updated_at=? WHERE id=?", (status, iso_now(), local_id))
            return cur.rowcount > 0

    def mark_synced(self, local_id: int, remote_id: Any,
                    confirmed_payments: Optional[Sequence[Dict[str, Any]]] = None):
        """Record a successful push. An existing remote id is never replaced."""
        if remote_id is None:
            raise ValueError("A synced purchase needs a remote id")
        with self.header_lock(local_id), self.transaction() as conn:
            conn.execute("""
                UPDATE purchase
                SET is_synced=1, transaction_id=COALESCE(transaction_id, ?),
                    sync_attempts=0, last_sync_error=NULL
                WHERE id=?
            """, (remote_id, local_id))
            if confirmed_payments:
                conn.execute("DELETE FROM purchase_payments WHERE purchase_id=?", (local_id,))
                self._insert_payments(conn, local_id, confirmed_payments)

    def record_sync_failure(self, local_id: int, error: str):
        with self.transaction() as conn:
            conn.execute(
                "UPDATE purchase SET sync_attempts=COALESCE(sync_attempts,0)+1, last_sync_error=? WHERE id=?",
                (error, local_id))

    def delete_header(self, local_id: int) -> bool:
        """Delete lines, then payments, then the header, in one transaction."""
        with self.header_lock(local_id), self.transaction() as conn:
            conn.execute("DELETE FROM purchase_lines WHERE purchase_id=?", (local_id,))
            conn.execute("DELETE FROM purchase_payments WHERE purchase_id=?", (local_id,))
            cur = conn.execute("DELETE FROM purchase WHERE id=?", (local_id,))
            deleted = cur.rowcount > 0
        self._forget_header_lock(local_id)
        return deleted

    def delete_all_purchases(self):
        with self.transaction() as conn:
            conn.execute("DELETE FROM purchase_lines")
            conn.execute("DELETE FROM purchase_payments")
            conn.execute("DELETE FROM purchase")
        with self._header_locks_guard:
            self._header_locks.clear()

    def _touch(self, conn: sqlite3.Connection, local_id: int):
        conn.execute("UPDATE purchase SET is_synced=0, updated_at=? WHERE id=?", (iso_now(), local_id))

    # ---------- lines ----------
    def _insert_lines(self, conn: sqlite3.Connection, local_id: int, lines: Iterable[Dict[str, Any]]):
        for line in lines:
            fields = dict(LINE_DEFAULTS)
            fields.update({k: v for k, v in _pick(line, LINE_FIELDS).items() if v is not None})
            fields['purchase_id'] = local_id
            cols = ", ".join(fields)
            marks = ", ".join("?" for _ in fields)
            conn.execute(f"INSERT INTO purchase_lines ({cols}) VALUES ({marks})", tuple(fields.values()))

    def get_lines(self, local_id: int) -> List[Dict[str, Any]]:
        return self._rows("SELECT * FROM purchase_lines WHERE purchase_id=? ORDER BY id", (local_id,))

    def count_lines(self, local_id: int) -> int:
        row = self._one("SELECT COUNT(*) AS c FROM purchase_lines WHERE purchase_id=?", (local_id,))
        return int(row["c"]) if row else 0

    def add_line(self, local_id: int, line: Dict[str, Any]) -> int:
        _validate_line(line)
        with self.header_lock(local_id), self.transaction() as conn:
            self._insert_lines(conn, local_id, [line])
            line_id = int(conn.execute("SELECT last_insert_rowid()").fetchone()[0])
            self._touch(conn, local_id)
        return line_id

    def update_line(self, line_id: int, changes: Dict[str, Any]) -> bool:
        fields = _pick(changes, LINE_FIELDS)
        _validate_line(fields)
        owner = self._one("SELECT purchase_id FROM purchase_lines WHERE id=?", (line_id,))
        if not owner or not fields:
            return False
        local_id = owner["purchase_id"]
        with self.header_lock(local_id), self.transaction() as conn:
            assigns = ", ".join(f"{k}=?" for k in fields)
            conn.execute(f"UPDATE purchase_lines SET {assigns} WHERE id=?", (*fields.values(), line_id))
            self._touch(conn, local_id)
        return True

    def delete_line(self, line_id: int) -> bool:
        owner = self._one("SELECT purchase_id FROM purchase_lines WHERE id=?", (line_id,))
        if not owner:
            return False
        local_id = owner["purchase_id"]
        with self.header_lock(local_id), self.transaction() as conn:
            conn.execute("DELETE FROM purchase_lines WHERE id=?", (line_id,))
            self._touch(conn, local_id)
        return True

    def replace_lines(self, local_id: int, lines: Sequence[Dict[str, Any]]):
        for line in lines:
            _validate_line(line)
        with self.header_lock(local_id), self.transaction() as conn:
            conn.execute("DELETE FROM purchase_lines WHERE purchase_id=?", (local_id,))
            self._insert_lines(conn, local_id, lines)
            self._touch(conn, local_id)

    # ---------- payments ----------
    def _insert_payments(self, conn: sqlite3.Connection, local_id: int, payments: Iterable[Dict[str, Any]]):
        for payment in payments:
            fields = _pick(payment, PAYMENT_FIELDS)
            fields['purchase_id'] = local_id
            cols = ", ".join(fields)
            marks = ", ".join("?" for _ in fields)
            conn.execute(f"INSERT INTO purchase_payments ({cols}) VALUES ({marks})", tuple(fields.values()))

    def get_payments(self, local_id: int) -> List[Dict[str, Any]]:
        return self._rows("SELECT * FROM purchase_payments WHERE purchase_id=? ORDER BY id", (local_id,))

    def add_payment(self, local_id: int, payment: Dict[str, Any]):
        with self.header_lock(local_id), self.transaction() as conn:
            self._insert_payments(conn, local_id, [payment])
            self._touch(conn, local_id)

    def delete_payment(self, payment_row_id: int) -> bool:
        owner = self._one("SELECT purchase_id FROM purchase_payments WHERE id=?", (payment_row_id,))
        if not owner:
            return False
        local_id = owner["purchase_id"]
        with self.header_lock(local_id), self.transaction() as conn:
            conn.execute("DELETE FROM purchase_payments WHERE id=?", (payment_row_id,))
            self._touch(conn, local_id)
        return True

    # ---------- remote mirror ----------
    def upsert_remote_header(self, record: Dict[str, Any]) -> Optional[int]:
        """Mirror a remote purchase locally. Unsynced local edits are left alone."""
        remote_id = remote_id_of(record)
        if remote_id is None:
            return None
        fields = _pick(record, HEADER_FIELDS)
        if fields.get('status') not in STATUSES:
            fields.pop('status', None)
        existing = self.header_by_remote_id(remote_id)
        if existing is None:
            with self.transaction() as conn:
                fields.update({'is_synced': 1, 'transaction_id': remote_id, 'updated_at': iso_now()})
                cols = ", ".join(fields)
                marks = ", ".join("?" for _ in fields)
                cur = conn.execute(f"INSERT INTO purchase ({cols}) VALUES ({marks})", tuple(fields.values()))
                local_id = int(cur.lastrowid)
                self._replace_remote_lines(conn, local_id, record)
            return local_id

        local_id = existing['id']
        with self.header_lock(local_id), self.transaction() as conn:
            # The row may have been edited or deleted since the lookup.
            row = conn.execute("SELECT is_synced FROM purchase WHERE id=?", (local_id,)).fetchone()
            if row is None or not row['is_synced']:
                return local_id if row is not None else None
            if fields:
                assigns = ", ".join(f"{k}=?" for k in fields)
                conn.execute(f"UPDATE purchase SET {assigns} WHERE id=?", (*fields.values(), local_id))
            self._replace_remote_lines(conn, local_id, record)
        return local_id

    def _replace_remote_lines(self, conn: sqlite3.Connection, local_id: int, record: Dict[str, Any]):
        remote_lines = record.get('purchase_lines')
        if isinstance(remote_lines, list):
            conn.execute("DELETE FROM purchase_lines WHERE purchase_id=?", (local_id,))
            self._insert_lines(conn, local_id, [l for l in remote_lines if isinstance(l, dict)])

    def prune_mirror(self, keep_ids: Iterable[Any], scope_ids: Optional[Iterable[Any]] = None) -> int:
        """Drop synced mirror rows the remote no longer returns."""
        rows = self._rows("SELECT id, transaction_id FROM purchase WHERE is_synced=1 AND transaction_id IS NOT NULL")
        if scope_ids is not None:
            scope = {str(i) for i in scope_ids}
            rows = [r for r in rows if str(r['transaction_id']) in scope]
        victims = prunable_rows(rows, keep_ids, key=lambda r: r['transaction_id'])
        for row in victims:
            self.delete_header(row['id'])
        return len(victims)

    # ---------- reference caches ----------
    def replace_cache(self, entity: str, records: Sequence[Dict[str, Any]], stamp: Optional[str] = None) -> int:
        """Clear then bulk-insert one reference cache and record its last sync."""
        table = CACHE_TABLES[entity]
        stamp = stamp or iso_now()
        build = _CACHE_ROW_BUILDERS[entity]
        rows = [build(r, stamp) for r in records if isinstance(r, dict)]
        with self.transaction() as conn:
            conn.execute(f"DELETE FROM {table}")
            for row in rows:
                cols = ", ".join(row)
                marks = ", ".join("?" for _ in row)
                conn.execute(f"INSERT OR REPLACE INTO {table} ({cols}) VALUES ({marks})", tuple(row.values()))
            self.set_value(last_sync_key(entity), stamp)
        return len(rows)

    def search_cache(self, entity: str, term: Optional[str] = None) -> List[Dict[str, Any]]:
        table = CACHE_TABLES[entity]
        order = CACHE_ORDER_COLUMN[entity]
        where, params = "1=1", []
        if term:
            pattern = f"%{_escape_like(term)}%"
            cols = CACHE_SEARCH_COLUMNS[entity]
            where = " OR ".join(f"{c} LIKE ? ESCAPE '\\'" for c in cols)
            params = [pattern] * len(cols)
        return self._rows(f"SELECT * FROM {table} WHERE {where} ORDER BY {order} COLLATE NOCASE ASC", params)

    def count_cache(self, entity: str) -> int:
        row = self._one(f"SELECT COUNT(*) AS c FROM {CACHE_TABLES[entity]}")
        return int(row["c"]) if row else 0

    def clear_caches(self):
        with self.transaction() as conn:
            for entity, table in CACHE_TABLES.items():
                conn.execute(f"DELETE FROM {table}")
                conn.execute("DELETE FROM system WHERE key=?", (last_sync_key(entity),))
            conn.execute("DELETE FROM system WHERE key=?", (CACHE_REFRESH_KEY,))

    def supplier_name(self, contact_id: Any) -> Optional[str]:
        row = self._one("SELECT name, business_name FROM cached_suppliers WHERE id=?", (contact_id,))
        if not row:
            return None
        return row["name"] or row["business_name"] or None

    def location_name(self, location_id: Any) -> Optional[str]:
        row = self._one("SELECT name FROM cached_locations WHERE id=?", (location_id,))
        return row["name"] if row else None

    def counts(self) -> Dict[str, int]:
        out = {}
        for name, sql in {
            'purchases': 'SELECT COUNT(*) AS c FROM purchase',
            'unsynced': 'SELECT COUNT(*) AS c FROM purchase WHERE is_synced=0',
            'lines': 'SELECT COUNT(*) AS c FROM purchase_lines',
            'payments': 'SELECT COUNT(*) AS c FROM purchase_payments',
        }.items():
            row = self._one(sql)
            out[name] = int(row["c"]) if row else 0
        for entity in CACHE_TABLES:
            out[f'cached_{entity}'] = self.count_cache(entity)
        return out
