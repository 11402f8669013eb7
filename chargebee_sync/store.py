"""Local member store: accounts, main profiles and plan terms.

The reconciler only talks to the ``AccountStore``, ``ProfileStore`` and
``PlanManager`` protocols. ``MemberDatabase`` is the SQLite-backed
implementation used by the command line.

Which optional fields an entity type carries is described once per store
by a ``FieldCapabilities`` value, read from the table columns when the
database is opened. The default schema keeps ``member_payment_monthly``
on the profile; deployments that add it to ``accounts`` get it there.
"""

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol

logger = logging.getLogger("chargebee_sync.store")

# Account fields
CUSTOMER_ID = "chargebee_customer_id"
PLAN_ID = "chargebee_plan_id"
MONTHLY_PAYMENT = "member_payment_monthly"

# Profile fields
MEMBERSHIP_TYPE = "membership_type"
END_DATE = "member_end_date"

MAIN_PROFILE = "main"

ACCOUNT_FIELDS = (CUSTOMER_ID, PLAN_ID, MONTHLY_PAYMENT)
PROFILE_FIELDS = (MONTHLY_PAYMENT, MEMBERSHIP_TYPE, END_DATE)

_VALID_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


@dataclass(frozen=True)
class FieldCapabilities:
    """Which optional fields an entity type supports."""

    fields: frozenset[str] = frozenset()
    roles: bool = False

    def has(self, name: str) -> bool:
        return name in self.fields

    @classmethod
    def of(cls, fields: Iterable[str], roles: bool = False) -> "FieldCapabilities":
        return cls(frozenset(fields), roles)


@dataclass
class Account:
    id: int
    fields: dict[str, Any] = field(default_factory=dict)
    roles: set[str] = field(default_factory=set)

    def get(self, name: str) -> Any:
        return self.fields.get(name)

    def set(self, name: str, value: Any) -> None:
        self.fields[name] = value

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass
class Profile:
    id: int
    account_id: int
    type: str = MAIN_PROFILE
    fields: dict[str, Any] = field(default_factory=dict)

    def get(self, name: str) -> Any:
        return self.fields.get(name)

    def set(self, name: str, value: Any) -> None:
        self.fields[name] = value


@dataclass
class PlanTerm:
    plan_id: str
    amount: str | None = None
    currency: str | None = None
    provider: str | None = None
    membership_type: str | None = None


class AccountStore(Protocol):
    capabilities: FieldCapabilities

    def load(self, account_id: int) -> Account | None: ...

    def find_linked_ids(self, start_id: int | None = None) -> list[int]: ...

    def save(self, account: Account, revision_log: str | None = None) -> None: ...


class ProfileStore(Protocol):
    capabilities: FieldCapabilities

    def load_by_account(self, account_id: int, profile_type: str = MAIN_PROFILE) -> Profile | None: ...

    def save(self, profile: Profile, revision_log: str | None = None) -> None: ...


class PlanManager(Protocol):
    def available(self) -> bool: ...

    def upsert_plan(self, plan_id: str, attributes: dict[str, Any]) -> PlanTerm: ...


def _validate_column(name: str) -> str:
    if not _VALID_IDENTIFIER_PATTERN.match(name):
        raise ValueError(f"Invalid column name: {name!r}")
    return name


class MemberDatabase:
    """SQLite database holding accounts, profiles, plan terms and revisions."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self.accounts = SqliteAccountStore(self)
        self.profiles = SqliteProfileStore(self)
        self.plans = SqlitePlanManager(self)

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("MemberDatabase not opened")
        return self._conn

    def open(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._create_tables()
        self.accounts.capabilities = FieldCapabilities.of(
            self._columns("accounts") & set(ACCOUNT_FIELDS), roles=True
        )
        self.profiles.capabilities = FieldCapabilities.of(
            self._columns("profiles") & set(PROFILE_FIELDS)
        )
        logger.debug(
            "Member database opened: %s (account fields=%s, profile fields=%s)",
            self.db_path,
            sorted(self.accounts.capabilities.fields),
            sorted(self.profiles.capabilities.fields),
        )

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "MemberDatabase":
        self.open()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _create_tables(self) -> None:
        """Create missing tables; existing tables keep their columns."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY,
                chargebee_customer_id TEXT,
                chargebee_plan_id TEXT
            );

            CREATE TABLE IF NOT EXISTS account_roles (
                account_id INTEGER NOT NULL,
                role TEXT NOT NULL,
                PRIMARY KEY (account_id, role)
            );

            CREATE TABLE IF NOT EXISTS profiles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL,
                type TEXT NOT NULL DEFAULT 'main',
                member_payment_monthly TEXT,
                membership_type TEXT,
                member_end_date TEXT
            );

            CREATE TABLE IF NOT EXISTS plan_terms (
                plan_id TEXT PRIMARY KEY,
                amount TEXT,
                currency TEXT,
                provider TEXT,
                membership_type TEXT
            );

            CREATE TABLE IF NOT EXISTS revisions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_type TEXT NOT NULL,
                entity_id INTEGER NOT NULL,
                message TEXT,
                created_at TEXT NOT NULL
            );
        """)
        self.conn.commit()

    def _columns(self, table: str) -> set[str]:
        rows = self.conn.execute(f"PRAGMA table_info({_validate_column(table)})").fetchall()
        return {row["name"] for row in rows}

    def add_revision(self, entity_type: str, entity_id: int, message: str) -> None:
        self.conn.execute(
            "INSERT INTO revisions (entity_type, entity_id, message, created_at) VALUES (?, ?, ?, ?)",
            (entity_type, entity_id, message, datetime.now(timezone.utc).isoformat()),
        )

    def revisions(self, entity_type: str, entity_id: int) -> list[str]:
        rows = self.conn.execute(
            "SELECT message FROM revisions WHERE entity_type = ? AND entity_id = ? ORDER BY id",
            (entity_type, entity_id),
        ).fetchall()
        return [row["message"] for row in rows]

    def insert_account(
        self,
        account_id: int,
        fields: dict[str, Any] | None = None,
        roles: Iterable[str] = (),
    ) -> Account:
        """Insert an account row (used for imports and tests)."""
        account = Account(account_id, dict(fields or {}), set(roles))
        self.conn.execute("INSERT INTO accounts (id) VALUES (?)", (account_id,))
        self.accounts.save(account)
        return account

    def insert_profile(
        self,
        account_id: int,
        fields: dict[str, Any] | None = None,
        profile_type: str = MAIN_PROFILE,
    ) -> Profile:
        """Insert a profile row (used for imports and tests)."""
        cursor = self.conn.execute(
            "INSERT INTO profiles (account_id, type) VALUES (?, ?)",
            (account_id, profile_type),
        )
        profile = Profile(cursor.lastrowid, account_id, profile_type, dict(fields or {}))
        self.profiles.save(profile)
        return profile


def _update_row(conn: sqlite3.Connection, table: str, row_id: int, values: dict[str, Any]) -> None:
    if not values:
        return
    assignments = ", ".join(f"{_validate_column(col)} = ?" for col in values)
    cursor = conn.execute(
        f"UPDATE {table} SET {assignments} WHERE id = ?",
        (*values.values(), row_id),
    )
    if cursor.rowcount == 0:
        raise LookupError(f"{table} row {row_id} does not exist")


class SqliteAccountStore:
    def __init__(self, db: MemberDatabase):
        self._db = db
        self.capabilities = FieldCapabilities(roles=True)

    def load(self, account_id: int) -> Account | None:
        row = self._db.conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            return None
        roles = {
            r["role"]
            for r in self._db.conn.execute(
                "SELECT role FROM account_roles WHERE account_id = ?", (account_id,)
            )
        }
        fields = {name: row[name] for name in self.capabilities.fields}
        return Account(row["id"], fields, roles)

    def find_linked_ids(self, start_id: int | None = None) -> list[int]:
        """Ids of accounts with a non-empty customer id, ascending."""
        sql = (
            "SELECT id FROM accounts "
            "WHERE chargebee_customer_id IS NOT NULL AND TRIM(chargebee_customer_id) != ''"
        )
        params: tuple[Any, ...] = ()
        if start_id is not None:
            sql += " AND id >= ?"
            params = (start_id,)
        sql += " ORDER BY id"
        return [row["id"] for row in self._db.conn.execute(sql, params)]

    def save(self, account: Account, revision_log: str | None = None) -> None:
        conn = self._db.conn
        values = {k: v for k, v in account.fields.items() if self.capabilities.has(k)}
        try:
            _update_row(conn, "accounts", account.id, values)
            if self.capabilities.roles:
                conn.execute("DELETE FROM account_roles WHERE account_id = ?", (account.id,))
                conn.executemany(
                    "INSERT INTO account_roles (account_id, role) VALUES (?, ?)",
                    [(account.id, role) for role in sorted(account.roles)],
                )
            if revision_log:
                self._db.add_revision("account", account.id, revision_log)
            conn.commit()
        except Exception:
            conn.rollback()
            raise


class SqliteProfileStore:
    def __init__(self, db: MemberDatabase):
        self._db = db
        self.capabilities = FieldCapabilities()

    def load_by_account(self, account_id: int, profile_type: str = MAIN_PROFILE) -> Profile | None:
        row = self._db.conn.execute(
            "SELECT * FROM profiles WHERE account_id = ? AND type = ? ORDER BY id LIMIT 1",
            (account_id, profile_type),
        ).fetchone()
        if row is None:
            return None
        fields = {name: row[name] for name in self.capabilities.fields}
        return Profile(row["id"], row["account_id"], row["type"], fields)

    def save(self, profile: Profile, revision_log: str | None = None) -> None:
        conn = self._db.conn
        values = {k: v for k, v in profile.fields.items() if self.capabilities.has(k)}
        try:
            _update_row(conn, "profiles", profile.id, values)
            if revision_log:
                self._db.add_revision("profile", profile.id, revision_log)
            conn.commit()
        except Exception:
            conn.rollback()
            raise


class SqlitePlanManager:
    """Plan terms keyed by Chargebee plan id.

    ``membership_type`` is maintained by administrators and is never
    overwritten by an upsert.
    """

    UPSERT_FIELDS = ("amount", "currency", "provider")

    def __init__(self, db: MemberDatabase):
        self._db = db

    def available(self) -> bool:
        if self._db._conn is None:
            return False
        row = self._db.conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'plan_terms'"
        ).fetchone()
        return row is not None

    def get(self, plan_id: str) -> PlanTerm | None:
        row = self._db.conn.execute(
            "SELECT * FROM plan_terms WHERE plan_id = ?", (plan_id,)
        ).fetchone()
        if row is None:
            return None
        return PlanTerm(
            plan_id=row["plan_id"],
            amount=row["amount"],
            currency=row["currency"],
            provider=row["provider"],
            membership_type=row["membership_type"],
        )

    def set_membership_type(self, plan_id: str, membership_type: str | None) -> None:
        self._db.conn.execute(
            "UPDATE plan_terms SET membership_type = ? WHERE plan_id = ?",
            (membership_type, plan_id),
        )
        self._db.conn.commit()

    def upsert_plan(self, plan_id: str, attributes: dict[str, Any]) -> PlanTerm:
        conn = self._db.conn
        values = {
            k: (None if attributes.get(k) is None else str(attributes[k]))
            for k in self.UPSERT_FIELDS
        }
        term = self.get(plan_id)
        if term is None:
            conn.execute(
                "INSERT INTO plan_terms (plan_id, amount, currency, provider) VALUES (?, ?, ?, ?)",
                (plan_id, values["amount"], values["currency"], values["provider"]),
            )
            conn.commit()
            logger.info("Plan term created: %s (%s %s)", plan_id, values["amount"], values["currency"])
            return PlanTerm(plan_id, **values)

        changed = {k: v for k, v in values.items() if getattr(term, k) != v}
        if changed:
            assignments = ", ".join(f"{k} = ?" for k in changed)
            conn.execute(
                f"UPDATE plan_terms SET {assignments} WHERE plan_id = ?",
                (*changed.values(), plan_id),
            )
            conn.commit()
            logger.info("Plan term updated: %s (%s)", plan_id, ", ".join(sorted(changed)))
            for k, v in changed.items():
                setattr(term, k, v)
        return term
