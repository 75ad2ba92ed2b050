from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .config import Settings
from .errors import ConflictError, InternalError, NotFoundError, ValidationError
from .schemas import BankAccountCreate, TransactionCreate, TransactionType, TransactionUpdate
from .services.ledger import transaction_total
from .store import InMemoryStore

logger = logging.getLogger(__name__)

EMAIL_TAKEN = "User with this email already exists"
CATEGORY_TAKEN = "Category with this name already exists"
SUBCATEGORY_TAKEN = "Subcategory with this name already exists in this category"

TRANSACTION_COLUMNS = {
    "account": "account",
    "date": "date",
    "name": "name",
    "debit": "debit",
    "credit": "credit",
    "categoryId": "category_id",
    "subcategoryId": "subcategory_id",
    "type": "type",
    "location": "location",
    "latitude": "latitude",
    "longitude": "longitude",
}


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in fields.items():
        column = TRANSACTION_COLUMNS.get(key)
        if column is None:
            continue
        values[column] = value.value if isinstance(value, TransactionType) else value
    return values


def _shape_transaction(
    row: dict[str, Any],
    category_name: str | None,
    subcategory_name: str | None,
    subcategory_category_id: int | None,
) -> dict[str, Any]:
    shaped = dict(row)
    for key in ("date", "created_at", "updated_at"):
        shaped[key] = _as_utc(shaped.get(key))
    shaped["debit"] = float(shaped["debit"])
    shaped["credit"] = float(shaped["credit"])
    shaped["total"] = transaction_total(shaped)
    shaped["category"] = (
        {"id": shaped["category_id"], "name": category_name} if category_name is not None else None
    )
    shaped["subcategory"] = (
        {"id": shaped["subcategory_id"], "name": subcategory_name, "category_id": subcategory_category_id}
        if subcategory_name is not None
        else None
    )
    return shaped


def _check_references(category: dict[str, Any] | None, subcategory: dict[str, Any] | None, category_id: int | None, subcategory_id: int | None) -> None:
    if category_id is not None and category is None:
        raise NotFoundError("Category not found")
    if subcategory_id is not None and subcategory is None:
        raise NotFoundError("Subcategory not found")
    if category_id is not None and subcategory is not None and subcategory["category_id"] != category_id:
        raise ValidationError(
            "Subcategory does not belong to the selected category",
            details=[{"field": "subcategoryId", "message": "subcategory belongs to another category"}],
        )


class Persistence:
    def create_user(self, email: str, full_name: str, password_hash: str) -> dict[str, Any]:
        raise NotImplementedError

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def get_user_by_id(self, user_id: int) -> dict[str, Any] | None:
        raise NotImplementedError

    def update_password_hash(self, user_id: int, password_hash: str) -> None:
        raise NotImplementedError

    def list_bank_accounts(self, user_id: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    def create_bank_account(self, user_id: int, payload: BankAccountCreate) -> dict[str, Any]:
        raise NotImplementedError

    def delete_bank_account(self, user_id: int, account_id: int) -> None:
        raise NotImplementedError

    def list_categories(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    def create_category(self, name: str) -> dict[str, Any]:
        raise NotImplementedError

    def get_or_create_category(self, name: str) -> tuple[dict[str, Any], bool]:
        raise NotImplementedError

    def delete_category(self, category_id: int) -> None:
        raise NotImplementedError

    def list_subcategories(self, category_id: int | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def create_subcategory(self, name: str, category_id: int) -> dict[str, Any]:
        raise NotImplementedError

    def get_or_create_subcategory(self, name: str, category_id: int) -> tuple[dict[str, Any], bool]:
        raise NotImplementedError

    def delete_subcategory(self, subcategory_id: int) -> None:
        raise NotImplementedError

    def list_transactions(self, user_id: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    def create_transaction(self, user_id: int, payload: TransactionCreate) -> dict[str, Any]:
        raise NotImplementedError

    def update_transaction(self, user_id: int, transaction_id: int, payload: TransactionUpdate) -> dict[str, Any]:
        raise NotImplementedError

    def delete_transaction(self, user_id: int, transaction_id: int) -> None:
        raise NotImplementedError

    def delete_all_transactions(self, user_id: int) -> int:
        raise NotImplementedError


class InMemoryPersistence(Persistence):
    def __init__(self, store: InMemoryStore | None = None) -> None:
        self.store = store or InMemoryStore()

    def create_user(self, email: str, full_name: str, password_hash: str) -> dict[str, Any]:
        with self.store.lock:
            if any(row["email"] == email for row in self.store.users.values()):
                raise ConflictError(EMAIL_TAKEN)
            user_id = self.store.next_id("users")
            row = {
                "id": user_id,
                "email": email,
                "full_name": full_name,
                "password_hash": password_hash,
                "created_at": self.store.now(),
            }
            self.store.users[user_id] = row
            return dict(row)

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        for row in self.store.users.values():
            if row["email"] == email:
                return dict(row)
        return None

    def get_user_by_id(self, user_id: int) -> dict[str, Any] | None:
        row = self.store.users.get(user_id)
        return dict(row) if row else None

    def update_password_hash(self, user_id: int, password_hash: str) -> None:
        with self.store.lock:
            row = self.store.users.get(user_id)
            if row is None:
                raise NotFoundError("User not found")
            row["password_hash"] = password_hash

    def list_bank_accounts(self, user_id: int) -> list[dict[str, Any]]:
        rows = [dict(a) for a in self.store.bank_accounts.values() if a["user_id"] == user_id]
        return sorted(rows, key=lambda a: (a["created_at"], a["id"]), reverse=True)

    def create_bank_account(self, user_id: int, payload: BankAccountCreate) -> dict[str, Any]:
        with self.store.lock:
            entity_id = self.store.next_id("bank_accounts")
            row = {
                "id": entity_id,
                "name": payload.name,
                "account_number": payload.accountNumber,
                "user_id": user_id,
                "created_at": self.store.now(),
            }
            self.store.bank_accounts[entity_id] = row
            return dict(row)

    def delete_bank_account(self, user_id: int, account_id: int) -> None:
        with self.store.lock:
            row = self.store.bank_accounts.get(account_id)
            if not row or row["user_id"] != user_id:
                raise NotFoundError("Bank account not found")
            del self.store.bank_accounts[account_id]

    def _subcategories_of(self, category_id: int) -> list[dict[str, Any]]:
        rows = [dict(s) for s in self.store.subcategories.values() if s["category_id"] == category_id]
        return sorted(rows, key=lambda s: s["id"])

    def list_categories(self) -> list[dict[str, Any]]:
        with self.store.lock:
            rows = [{**c, "subcategories": self._subcategories_of(c["id"])} for c in self.store.categories.values()]
        return sorted(rows, key=lambda c: c["name"])

    def create_category(self, name: str) -> dict[str, Any]:
        with self.store.lock:
            if any(c["name"] == name for c in self.store.categories.values()):
                raise ConflictError(CATEGORY_TAKEN)
            category_id = self.store.next_id("categories")
            row = {"id": category_id, "name": name}
            self.store.categories[category_id] = row
            return {**row, "subcategories": []}

    def get_or_create_category(self, name: str) -> tuple[dict[str, Any], bool]:
        with self.store.lock:
            for row in self.store.categories.values():
                if row["name"] == name:
                    return {**row, "subcategories": self._subcategories_of(row["id"])}, False
            return self.create_category(name), True

    def delete_category(self, category_id: int) -> None:
        with self.store.lock:
            if category_id not in self.store.categories:
                raise NotFoundError("Category not found")
            doomed = {s_id for s_id, s in self.store.subcategories.items() if s["category_id"] == category_id}
            for tx in self.store.transactions.values():
                if tx["category_id"] == category_id:
                    tx["category_id"] = None
                if tx["subcategory_id"] in doomed:
                    tx["subcategory_id"] = None
            for s_id in doomed:
                del self.store.subcategories[s_id]
            del self.store.categories[category_id]

    def list_subcategories(self, category_id: int | None = None) -> list[dict[str, Any]]:
        rows = [
            dict(s)
            for s in self.store.subcategories.values()
            if category_id is None or s["category_id"] == category_id
        ]
        return sorted(rows, key=lambda s: (s["name"], s["id"]))

    def create_subcategory(self, name: str, category_id: int) -> dict[str, Any]:
        with self.store.lock:
            if category_id not in self.store.categories:
                raise NotFoundError("Category not found")
            if any(s["name"] == name and s["category_id"] == category_id for s in self.store.subcategories.values()):
                raise ConflictError(SUBCATEGORY_TAKEN)
            entity_id = self.store.next_id("subcategories")
            row = {"id": entity_id, "name": name, "category_id": category_id}
            self.store.subcategories[entity_id] = row
            return dict(row)

    def get_or_create_subcategory(self, name: str, category_id: int) -> tuple[dict[str, Any], bool]:
        with self.store.lock:
            for row in self.store.subcategories.values():
                if row["name"] == name and row["category_id"] == category_id:
                    return dict(row), False
            return self.create_subcategory(name, category_id), True

    def delete_subcategory(self, subcategory_id: int) -> None:
        with self.store.lock:
            if subcategory_id not in self.store.subcategories:
                raise NotFoundError("Subcategory not found")
            for tx in self.store.transactions.values():
                if tx["subcategory_id"] == subcategory_id:
                    tx["subcategory_id"] = None
            del self.store.subcategories[subcategory_id]

    def _enrich(self, row: dict[str, Any]) -> dict[str, Any]:
        category = self.store.categories.get(row["category_id"]) if row["category_id"] is not None else None
        subcategory = self.store.subcategories.get(row["subcategory_id"]) if row["subcategory_id"] is not None else None
        return _shape_transaction(
            row,
            category["name"] if category else None,
            subcategory["name"] if subcategory else None,
            subcategory["category_id"] if subcategory else None,
        )

    def _check_transaction_references(self, category_id: int | None, subcategory_id: int | None) -> None:
        _check_references(
            self.store.categories.get(category_id) if category_id is not None else None,
            self.store.subcategories.get(subcategory_id) if subcategory_id is not None else None,
            category_id,
            subcategory_id,
        )

    def list_transactions(self, user_id: int) -> list[dict[str, Any]]:
        with self.store.lock:
            rows = [self._enrich(t) for t in self.store.transactions.values() if t["user_id"] == user_id]
        return sorted(rows, key=lambda t: (t["date"], t["id"]), reverse=True)

    def create_transaction(self, user_id: int, payload: TransactionCreate) -> dict[str, Any]:
        with self.store.lock:
            self._check_transaction_references(payload.categoryId, payload.subcategoryId)
            entity_id = self.store.next_id("transactions")
            now = self.store.now()
            row = {
                "id": entity_id,
                "user_id": user_id,
                **_column_values(payload.model_dump()),
                "created_at": now,
                "updated_at": now,
            }
            self.store.transactions[entity_id] = row
            return self._enrich(row)

    def update_transaction(self, user_id: int, transaction_id: int, payload: TransactionUpdate) -> dict[str, Any]:
        with self.store.lock:
            original = self.store.transactions.get(transaction_id)
            if not original or original["user_id"] != user_id:
                raise NotFoundError("Transaction not found")
            updates = _column_values(payload.model_dump(exclude_unset=True))
            row = {**original, **updates}
            if "category_id" in updates or "subcategory_id" in updates:
                self._check_transaction_references(row["category_id"], row["subcategory_id"])
            row["updated_at"] = self.store.now()
            self.store.transactions[transaction_id] = row
            return self._enrich(row)

    def delete_transaction(self, user_id: int, transaction_id: int) -> None:
        with self.store.lock:
            row = self.store.transactions.get(transaction_id)
            if not row or row["user_id"] != user_id:
                raise NotFoundError("Transaction not found")
            del self.store.transactions[transaction_id]

    def delete_all_transactions(self, user_id: int) -> int:
        with self.store.lock:
            doomed = [tx_id for tx_id, tx in self.store.transactions.items() if tx["user_id"] == user_id]
            for tx_id in doomed:
                del self.store.transactions[tx_id]
            return len(doomed)


metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("full_name", String(200), nullable=False),
    Column("password_hash", String(255), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

bank_accounts_table = Table(
    "bank_accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(120), nullable=False),
    Column("account_number", String(64), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("idx_bank_accounts_user", "user_id", "created_at"),
)

categories_table = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(120), nullable=False, unique=True),
)

subcategories_table = Table(
    "subcategories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(120), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False),
    UniqueConstraint("name", "category_id", name="uq_subcategories_name_category"),
)

transactions_table = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("account", String(120), nullable=False),
    Column("date", DateTime(timezone=True), nullable=False),
    Column("name", String(200), nullable=False),
    Column("debit", Numeric(14, 2, asdecimal=False), nullable=False, default=0),
    Column("credit", Numeric(14, 2, asdecimal=False), nullable=False, default=0),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True),
    Column("subcategory_id", Integer, ForeignKey("subcategories.id", ondelete="SET NULL"), nullable=True),
    Column("type", String(16), nullable=False),
    Column("location", Text, nullable=True),
    Column("latitude", Float, nullable=True),
    Column("longitude", Float, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("idx_transactions_user_date", "user_id", "date"),
)


def _is_unique_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig).lower()
    return "unique" in message or "duplicate key" in message


class SqlPersistence(Persistence):
    def __init__(self, database_url: str) -> None:
        connect_args: dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        self.engine: Engine = create_engine(database_url, future=True, pool_pre_ping=True, connect_args=connect_args)
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            logger.error("schema bootstrap failed: %s", exc.__class__.__name__)
            raise InternalError("Database unavailable") from exc

    @contextmanager
    def _begin(self, conflict: str | None = None) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            if conflict is not None and _is_unique_violation(exc):
                raise ConflictError(conflict) from exc
            logger.error("integrity error: %s", exc.orig)
            raise InternalError("Database error") from exc
        except SQLAlchemyError as exc:
            logger.error("database error: %s", exc.__class__.__name__)
            raise InternalError("Database error") from exc

    @staticmethod
    def _first(conn: Connection, statement: Any) -> dict[str, Any] | None:
        row = conn.execute(statement).first()
        return dict(row._mapping) if row is not None else None

    @staticmethod
    def _all(conn: Connection, statement: Any) -> list[dict[str, Any]]:
        return [dict(row._mapping) for row in conn.execute(statement).fetchall()]

    @staticmethod
    def _public_user(row: dict[str, Any] | None) -> dict[str, Any] | None:
        if row is None:
            return None
        return {**row, "created_at": _as_utc(row["created_at"])}

    def create_user(self, email: str, full_name: str, password_hash: str) -> dict[str, Any]:
        with self._begin(conflict=EMAIL_TAKEN) as conn:
            if self._first(conn, select(users_table.c.id).where(users_table.c.email == email)):
                raise ConflictError(EMAIL_TAKEN)
            values = {
                "email": email,
                "full_name": full_name,
                "password_hash": password_hash,
                "created_at": datetime.now(timezone.utc),
            }
            result = conn.execute(insert(users_table).values(**values))
            return {"id": result.inserted_primary_key[0], **values}

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        with self._begin() as conn:
            return self._public_user(self._first(conn, select(users_table).where(users_table.c.email == email)))

    def get_user_by_id(self, user_id: int) -> dict[str, Any] | None:
        with self._begin() as conn:
            return self._public_user(self._first(conn, select(users_table).where(users_table.c.id == user_id)))

    def update_password_hash(self, user_id: int, password_hash: str) -> None:
        with self._begin() as conn:
            result = conn.execute(
                update(users_table).where(users_table.c.id == user_id).values(password_hash=password_hash)
            )
            if result.rowcount == 0:
                raise NotFoundError("User not found")

    def list_bank_accounts(self, user_id: int) -> list[dict[str, Any]]:
        with self._begin() as conn:
            rows = self._all(
                conn,
                select(bank_accounts_table)
                .where(bank_accounts_table.c.user_id == user_id)
                .order_by(bank_accounts_table.c.created_at.desc(), bank_accounts_table.c.id.desc()),
            )
        return [{**row, "created_at": _as_utc(row["created_at"])} for row in rows]

    def create_bank_account(self, user_id: int, payload: BankAccountCreate) -> dict[str, Any]:
        values = {
            "name": payload.name,
            "account_number": payload.accountNumber,
            "user_id": user_id,
            "created_at": datetime.now(timezone.utc),
        }
        with self._begin() as conn:
            result = conn.execute(insert(bank_accounts_table).values(**values))
            return {"id": result.inserted_primary_key[0], **values}

    def delete_bank_account(self, user_id: int, account_id: int) -> None:
        with self._begin() as conn:
            result = conn.execute(
                delete(bank_accounts_table).where(
                    bank_accounts_table.c.id == account_id, bank_accounts_table.c.user_id == user_id
                )
            )
            if result.rowcount == 0:
                raise NotFoundError("Bank account not found")

    def list_categories(self) -> list[dict[str, Any]]:
        with self._begin() as conn:
            cats = self._all(conn, select(categories_table).order_by(categories_table.c.name, categories_table.c.id))
            subs = self._all(conn, select(subcategories_table).order_by(subcategories_table.c.id))
        by_category: dict[int, list[dict[str, Any]]] = {}
        for sub in subs:
            by_category.setdefault(sub["category_id"], []).append(sub)
        return [{**cat, "subcategories": by_category.get(cat["id"], [])} for cat in cats]

    def create_category(self, name: str) -> dict[str, Any]:
        with self._begin(conflict=CATEGORY_TAKEN) as conn:
            if self._first(conn, select(categories_table.c.id).where(categories_table.c.name == name)):
                raise ConflictError(CATEGORY_TAKEN)
            result = conn.execute(insert(categories_table).values(name=name))
            return {"id": result.inserted_primary_key[0], "name": name, "subcategories": []}

    def get_or_create_category(self, name: str) -> tuple[dict[str, Any], bool]:
        try:
            return self.create_category(name), True
        except ConflictError:
            with self._begin() as conn:
                row = self._first(conn, select(categories_table).where(categories_table.c.name == name))
                subs = self._all(
                    conn,
                    select(subcategories_table)
                    .join(categories_table, subcategories_table.c.category_id == categories_table.c.id)
                    .where(categories_table.c.name == name)
                    .order_by(subcategories_table.c.id),
                )
            if row is None:
                raise
            return {**row, "subcategories": subs}, False

    def delete_category(self, category_id: int) -> None:
        with self._begin() as conn:
            if not self._first(conn, select(categories_table.c.id).where(categories_table.c.id == category_id)):
                raise NotFoundError("Category not found")
            sub_ids = select(subcategories_table.c.id).where(subcategories_table.c.category_id == category_id)
            conn.execute(
                update(transactions_table)
                .where(transactions_table.c.subcategory_id.in_(sub_ids))
                .values(subcategory_id=None)
            )
            conn.execute(
                update(transactions_table)
                .where(transactions_table.c.category_id == category_id)
                .values(category_id=None)
            )
            conn.execute(delete(subcategories_table).where(subcategories_table.c.category_id == category_id))
            conn.execute(delete(categories_table).where(categories_table.c.id == category_id))

    def list_subcategories(self, category_id: int | None = None) -> list[dict[str, Any]]:
        statement = select(subcategories_table).order_by(subcategories_table.c.name, subcategories_table.c.id)
        if category_id is not None:
            statement = statement.where(subcategories_table.c.category_id == category_id)
        with self._begin() as conn:
            return self._all(conn, statement)

    def create_subcategory(self, name: str, category_id: int) -> dict[str, Any]:
        with self._begin(conflict=SUBCATEGORY_TAKEN) as conn:
            if not self._first(conn, select(categories_table.c.id).where(categories_table.c.id == category_id)):
                raise NotFoundError("Category not found")
            existing = self._first(
                conn,
                select(subcategories_table.c.id).where(
                    subcategories_table.c.name == name, subcategories_table.c.category_id == category_id
                ),
            )
            if existing:
                raise ConflictError(SUBCATEGORY_TAKEN)
            result = conn.execute(insert(subcategories_table).values(name=name, category_id=category_id))
            return {"id": result.inserted_primary_key[0], "name": name, "category_id": category_id}

    def get_or_create_subcategory(self, name: str, category_id: int) -> tuple[dict[str, Any], bool]:
        try:
            return self.create_subcategory(name, category_id), True
        except ConflictError:
            with self._begin() as conn:
                row = self._first(
                    conn,
                    select(subcategories_table).where(
                        subcategories_table.c.name == name, subcategories_table.c.category_id == category_id
                    ),
                )
            if row is None:
                raise
            return row, False

    def delete_subcategory(self, subcategory_id: int) -> None:
        with self._begin() as conn:
            if not self._first(conn, select(subcategories_table.c.id).where(subcategories_table.c.id == subcategory_id)):
                raise NotFoundError("Subcategory not found")
            conn.execute(
                update(transactions_table)
                .where(transactions_table.c.subcategory_id == subcategory_id)
                .values(subcategory_id=None)
            )
            conn.execute(delete(subcategories_table).where(subcategories_table.c.id == subcategory_id))

    @staticmethod
    def _transaction_query() -> Any:
        joined = transactions_table.outerjoin(
            categories_table, transactions_table.c.category_id == categories_table.c.id
        ).outerjoin(subcategories_table, transactions_table.c.subcategory_id == subcategories_table.c.id)
        return select(
            transactions_table,
            categories_table.c.name.label("category_name"),
            subcategories_table.c.name.label("subcategory_name"),
            subcategories_table.c.category_id.label("subcategory_category_id"),
        ).select_from(joined)

    @staticmethod
    def _shape(row: dict[str, Any]) -> dict[str, Any]:
        category_name = row.pop("category_name")
        subcategory_name = row.pop("subcategory_name")
        subcategory_category_id = row.pop("subcategory_category_id")
        return _shape_transaction(row, category_name, subcategory_name, subcategory_category_id)

    def _fetch_transaction(self, conn: Connection, user_id: int, transaction_id: int) -> dict[str, Any] | None:
        row = self._first(
            conn,
            self._transaction_query().where(
                transactions_table.c.id == transaction_id, transactions_table.c.user_id == user_id
            ),
        )
        return self._shape(row) if row is not None else None

    def _check_transaction_references(self, conn: Connection, category_id: int | None, subcategory_id: int | None) -> None:
        category = None
        subcategory = None
        if category_id is not None:
            category = self._first(conn, select(categories_table).where(categories_table.c.id == category_id))
        if subcategory_id is not None:
            subcategory = self._first(conn, select(subcategories_table).where(subcategories_table.c.id == subcategory_id))
        _check_references(category, subcategory, category_id, subcategory_id)

    def list_transactions(self, user_id: int) -> list[dict[str, Any]]:
        statement = (
            self._transaction_query()
            .where(transactions_table.c.user_id == user_id)
            .order_by(transactions_table.c.date.desc(), transactions_table.c.id.desc())
        )
        with self._begin() as conn:
            return [self._shape(row) for row in self._all(conn, statement)]

    def create_transaction(self, user_id: int, payload: TransactionCreate) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        values = {**_column_values(payload.model_dump()), "user_id": user_id, "created_at": now, "updated_at": now}
        with self._begin() as conn:
            self._check_transaction_references(conn, payload.categoryId, payload.subcategoryId)
            result = conn.execute(insert(transactions_table).values(**values))
            return self._fetch_transaction(conn, user_id, result.inserted_primary_key[0])

    def update_transaction(self, user_id: int, transaction_id: int, payload: TransactionUpdate) -> dict[str, Any]:
        updates = _column_values(payload.model_dump(exclude_unset=True))
        with self._begin() as conn:
            current = self._fetch_transaction(conn, user_id, transaction_id)
            if current is None:
                raise NotFoundError("Transaction not found")
            if "category_id" in updates or "subcategory_id" in updates:
                self._check_transaction_references(
                    conn,
                    updates.get("category_id", current["category_id"]),
                    updates.get("subcategory_id", current["subcategory_id"]),
                )
            conn.execute(
                update(transactions_table)
                .where(transactions_table.c.id == transaction_id, transactions_table.c.user_id == user_id)
                .values(**updates, updated_at=datetime.now(timezone.utc))
            )
            return self._fetch_transaction(conn, user_id, transaction_id)

    def delete_transaction(self, user_id: int, transaction_id: int) -> None:
        with self._begin() as conn:
            result = conn.execute(
                delete(transactions_table).where(
                    transactions_table.c.id == transaction_id, transactions_table.c.user_id == user_id
                )
            )
            if result.rowcount == 0:
                raise NotFoundError("Transaction not found")

    def delete_all_transactions(self, user_id: int) -> int:
        with self._begin() as conn:
            result = conn.execute(delete(transactions_table).where(transactions_table.c.user_id == user_id))
            return result.rowcount


def get_persistence(settings: Settings) -> Persistence:
    if settings.storage_backend == "sql":
        return SqlPersistence(settings.database_url)
    return InMemoryPersistence()
