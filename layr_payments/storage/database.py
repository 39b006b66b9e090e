"""
SQLite database storage backend for production use.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from ..exceptions import ConfigurationError, StorageError, ValidationError
from ..models import AccessTier, IntentStatus, PaymentIntent, Project, PurchaseGrant, UserAccount
from ..utils import retry
from .base import StorageBackend, StorageCapabilities

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        title TEXT DEFAULT '',
        demo_price INTEGER NOT NULL DEFAULT 0,
        download_price INTEGER NOT NULL DEFAULT 0,
        owner_wallet TEXT,
        chain_repo_id INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        wallet_address TEXT,
        display_name TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_users_wallet ON users(wallet_address)",
    """
    CREATE TABLE IF NOT EXISTS payment_intents (
        id TEXT PRIMARY KEY,
        payer_id TEXT NOT NULL,
        project_id TEXT NOT NULL,
        tier TEXT NOT NULL,
        amount INTEGER NOT NULL,
        recipient TEXT NOT NULL,
        currency TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        tx_hash TEXT,
        block_ref TEXT,
        amount_paid INTEGER,
        failure_reason TEXT,
        finalized_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_intents_key ON payment_intents(payer_id, project_id, tier, status)",
    "CREATE INDEX IF NOT EXISTS ix_intents_recipient ON payment_intents(recipient, created_at)",
    """
    CREATE TABLE IF NOT EXISTS purchase_grants (
        id TEXT PRIMARY KEY,
        payer_id TEXT NOT NULL,
        project_id TEXT NOT NULL,
        tier TEXT NOT NULL,
        amount INTEGER NOT NULL,
        tx_hash TEXT NOT NULL,
        intent_id TEXT NOT NULL REFERENCES payment_intents(id),
        block_ref TEXT,
        currency TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'confirmed',
        granted_at TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_grants_key
    ON purchase_grants(payer_id, project_id, tier) WHERE status = 'confirmed'
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_grants_tx_hash
    ON purchase_grants(tx_hash) WHERE status = 'confirmed'
    """,
]

_INTENT_COLUMNS = (
    "id, payer_id, project_id, tier, amount, recipient, currency, status, created_at, expires_at, "
    "tx_hash, block_ref, amount_paid, failure_reason, finalized_at"
)
_GRANT_COLUMNS = "id, payer_id, project_id, tier, amount, tx_hash, intent_id, block_ref, currency, status, granted_at"


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class DatabaseStorage(StorageBackend):
    """
    SQLite database storage backend for production use.

    Writes run inside ``BEGIN IMMEDIATE`` transactions so that finalize takes the
    write lock before reading the intent status. Partial unique indexes keep at
    most one confirmed grant per (payer, project, tier) and per transaction hash.
    """

    def __init__(self, db_path: str = "layr_payments.db", timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        super().__init__("DatabaseStorage")
        self._init_database()
        logger.info("DatabaseStorage initialized with database: %s", db_path)

    def _get_capabilities(self):
        return StorageCapabilities(
            supports_transactions=True,
            supports_persistence=True,
            supports_concurrent_access=True,
            supports_pagination=True,
        )

    def _validate_configuration(self):
        if not self.db_path or not isinstance(self.db_path, str):
            raise ConfigurationError("db_path is required for DatabaseStorage.", config_key="db_path")
        try:
            with open(self.db_path, "a"):
                pass
        except OSError as e:
            raise ConfigurationError(f"Database file {self.db_path} is not writable: {e}", config_key="db_path")

    def _perform_health_check(self):
        conn = self._connect()
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly
        return sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)

    def _init_database(self):
        try:
            conn = self._connect()
            try:
                for statement in _SCHEMA:
                    conn.execute(statement)
            finally:
                conn.close()
            logger.info("Database tables initialized successfully")
        except sqlite3.Error as e:
            logger.error("Error initializing database: %s", str(e))
            raise StorageError(
                f"Failed to initialize database: {str(e)}", storage_type=self.name, operation="init_database"
            )

    @retry(
        exceptions=sqlite3.OperationalError,
        max_attempts=3,
        initial_delay=0.05,
        logger=logger,
        retry_message="Retrying DB transaction...",
    )
    def _execute_transaction(self, operation_func: Callable[[sqlite3.Connection], Any]) -> Any:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                result = operation_func(conn)
                conn.execute("COMMIT")
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            return result
        finally:
            conn.close()

    def _run_in_transaction(self, operation_name: str, operation_func, entity_id: Optional[str] = None) -> Any:
        """Execute ``operation_func(conn)`` atomically, mapping sqlite errors to StorageError."""
        try:
            result = self._execute_transaction(operation_func)
            logger.debug("Committed transaction for %s", operation_name)
            return result
        except sqlite3.IntegrityError as e:
            logger.error("Constraint violation in %s: %s", operation_name, str(e))
            raise StorageError(
                f"Constraint violation in {operation_name}: {str(e)}",
                error_code="CONSTRAINT_VIOLATION",
                storage_type=self.name,
                operation=operation_name,
                entity_id=entity_id,
            )
        except sqlite3.Error as e:
            logger.error("Transaction failed for %s: %s", operation_name, str(e))
            raise StorageError(
                f"Transaction failed for {operation_name}: {str(e)}",
                storage_type=self.name,
                operation=operation_name,
                entity_id=entity_id,
            )

    @retry(exceptions=sqlite3.OperationalError, max_attempts=3, initial_delay=0.05, logger=logger, retry_message="Retrying DB read...")
    def _fetch(self, sql: str, params: tuple = (), one: bool = False):
        conn = self._connect()
        try:
            cursor = conn.execute(sql, params)
            return cursor.fetchone() if one else cursor.fetchall()
        finally:
            conn.close()

    def _query(self, operation_name: str, sql: str, params: tuple = (), one: bool = False):
        try:
            return self._fetch(sql, params, one)
        except sqlite3.Error as e:
            logger.error("Error in %s: %s", operation_name, str(e))
            raise StorageError(f"Query failed for {operation_name}: {str(e)}", storage_type=self.name, operation=operation_name)

    @staticmethod
    def _row_to_intent(row) -> PaymentIntent:
        return PaymentIntent(
            id=row[0],
            payer_id=row[1],
            project_id=row[2],
            tier=row[3],
            amount=row[4],
            recipient=row[5],
            currency=row[6],
            status=row[7],
            created_at=_parse_dt(row[8]),
            expires_at=_parse_dt(row[9]),
            tx_hash=row[10],
            block_ref=row[11],
            amount_paid=row[12],
            failure_reason=row[13],
            finalized_at=_parse_dt(row[14]),
        )

    @staticmethod
    def _row_to_grant(row) -> PurchaseGrant:
        return PurchaseGrant(
            id=row[0],
            payer_id=row[1],
            project_id=row[2],
            tier=row[3],
            amount=row[4],
            tx_hash=row[5],
            intent_id=row[6],
            block_ref=row[7],
            currency=row[8],
            status=row[9],
            granted_at=_parse_dt(row[10]),
        )

    def save_project(self, project: Project) -> None:
        if not isinstance(project, Project):
            raise ValidationError("Invalid project object", field="project", value=project)
        project.validate()

        def save_project_operation(conn):
            conn.execute(
                """
                INSERT OR REPLACE INTO projects
                (id, owner_id, title, demo_price, download_price, owner_wallet, chain_repo_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project.id,
                    project.owner_id,
                    project.title,
                    project.demo_price,
                    project.download_price,
                    project.owner_wallet,
                    project.chain_repo_id,
                    _iso(project.created_at),
                ),
            )

        self._run_in_transaction(f"save_project({project.id})", save_project_operation, project.id)
        logger.info("Saved project: %s", project.id)

    def get_project(self, project_id: str) -> Optional[Project]:
        if not project_id or not isinstance(project_id, str):
            raise ValidationError("Invalid project_id", field="project_id", value=project_id)
        row = self._query(
            "get_project",
            "SELECT id, owner_id, title, demo_price, download_price, owner_wallet, chain_repo_id, created_at "
            "FROM projects WHERE id = ?",
            (project_id,),
            one=True,
        )
        if not row:
            return None
        return Project(
            id=row[0],
            owner_id=row[1],
            title=row[2] or "",
            demo_price=row[3],
            download_price=row[4],
            owner_wallet=row[5],
            chain_repo_id=row[6],
            created_at=_parse_dt(row[7]),
        )

    def save_user(self, user: UserAccount) -> None:
        if not isinstance(user, UserAccount):
            raise ValidationError("Invalid user object", field="user", value=user)
        user.validate()

        def save_user_operation(conn):
            conn.execute(
                "INSERT OR REPLACE INTO users (id, wallet_address, display_name, created_at) VALUES (?, ?, ?, ?)",
                (user.id, user.wallet_address, user.display_name, _iso(user.created_at)),
            )

        self._run_in_transaction(f"save_user({user.id})", save_user_operation, user.id)
        logger.info("Saved user: %s", user.id)

    def _row_to_user(self, row) -> Optional[UserAccount]:
        if not row:
            return None
        return UserAccount(id=row[0], wallet_address=row[1], display_name=row[2], created_at=_parse_dt(row[3]))

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        if not user_id or not isinstance(user_id, str):
            raise ValidationError("Invalid user_id", field="user_id", value=user_id)
        row = self._query(
            "get_user",
            "SELECT id, wallet_address, display_name, created_at FROM users WHERE id = ?",
            (user_id,),
            one=True,
        )
        return self._row_to_user(row)

    def get_user_by_wallet(self, wallet_address: str) -> Optional[UserAccount]:
        if not wallet_address or not isinstance(wallet_address, str):
            raise ValidationError("Invalid wallet_address", field="wallet_address", value=wallet_address)
        row = self._query(
            "get_user_by_wallet",
            "SELECT id, wallet_address, display_name, created_at FROM users WHERE wallet_address = ? LIMIT 1",
            (wallet_address,),
            one=True,
        )
        return self._row_to_user(row)

    def save_intent(self, intent: PaymentIntent) -> None:
        if not isinstance(intent, PaymentIntent):
            raise ValidationError("Invalid payment intent object", field="intent", value=intent)

        def save_intent_operation(conn):
            conn.execute(
                f"INSERT INTO payment_intents ({_INTENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._intent_params(intent),
            )

        self._run_in_transaction(f"save_intent({intent.id})", save_intent_operation, intent.id)
        logger.debug("Saved payment intent: %s", intent.id)

    @staticmethod
    def _intent_params(intent: PaymentIntent) -> tuple:
        return (
            intent.id,
            intent.payer_id,
            intent.project_id,
            intent.tier.value,
            intent.amount,
            intent.recipient,
            intent.currency,
            intent.status.value,
            _iso(intent.created_at),
            _iso(intent.expires_at),
            intent.tx_hash,
            intent.block_ref,
            intent.amount_paid,
            intent.failure_reason.value if intent.failure_reason else None,
            _iso(intent.finalized_at),
        )

    def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        if not intent_id or not isinstance(intent_id, str):
            raise ValidationError("Invalid intent_id", field="intent_id", value=intent_id)
        row = self._query(
            "get_intent", f"SELECT {_INTENT_COLUMNS} FROM payment_intents WHERE id = ?", (intent_id,), one=True
        )
        return self._row_to_intent(row) if row else None

    def find_open_intent(self, payer_id: str, project_id: str, tier: AccessTier) -> Optional[PaymentIntent]:
        row = self._query(
            "find_open_intent",
            f"""
            SELECT {_INTENT_COLUMNS} FROM payment_intents
            WHERE payer_id = ? AND project_id = ? AND tier = ? AND status = 'pending'
            ORDER BY created_at DESC LIMIT 1
            """,
            (payer_id, project_id, tier.value),
            one=True,
        )
        return self._row_to_intent(row) if row else None

    def list_intents(
        self,
        payer_id: Optional[str] = None,
        recipient: Optional[str] = None,
        project_id: Optional[str] = None,
        status: Optional[IntentStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        either_party: bool = False,
    ) -> List[PaymentIntent]:
        clauses = []
        params: tuple = ()
        party = []
        if payer_id is not None:
            party.append("payer_id = ?")
            params += (payer_id,)
        if recipient is not None:
            party.append("recipient = ?")
            params += (recipient,)
        if party:
            clauses.append("(" + (" OR " if either_party else " AND ").join(party) + ")")
        if project_id is not None:
            clauses.append("project_id = ?")
            params += (project_id,)
        if status is not None:
            clauses.append("status = ?")
            params += (status.value,)
        # created_at is stored as UTC ISO text, which sorts chronologically
        if since is not None:
            clauses.append("created_at >= ?")
            params += (_iso(since.astimezone(timezone.utc)),)
        if until is not None:
            clauses.append("created_at <= ?")
            params += (_iso(until.astimezone(timezone.utc)),)

        sql = f"SELECT {_INTENT_COLUMNS} FROM payment_intents"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC"
        return [self._row_to_intent(row) for row in self._query("list_intents", sql, params)]

    def finalize_intent(self, intent: PaymentIntent, grant: Optional[PurchaseGrant] = None) -> bool:
        def finalize_operation(conn):
            cursor = conn.execute(
                """
                UPDATE payment_intents
                SET status = ?, tx_hash = ?, block_ref = ?, amount_paid = ?, failure_reason = ?, finalized_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (
                    intent.status.value,
                    intent.tx_hash,
                    intent.block_ref,
                    intent.amount_paid,
                    intent.failure_reason.value if intent.failure_reason else None,
                    _iso(intent.finalized_at),
                    intent.id,
                ),
            )
            if cursor.rowcount != 1:
                return False
            if grant is not None:
                conn.execute(
                    f"INSERT INTO purchase_grants ({_GRANT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        grant.id,
                        grant.payer_id,
                        grant.project_id,
                        grant.tier.value,
                        grant.amount,
                        grant.tx_hash,
                        grant.intent_id,
                        grant.block_ref,
                        grant.currency,
                        grant.status.value,
                        _iso(grant.granted_at),
                    ),
                )
            return True

        applied = self._run_in_transaction(f"finalize_intent({intent.id})", finalize_operation, intent.id)
        if applied:
            logger.info("Finalized intent %s as %s", intent.id, intent.status.value)
        else:
            logger.info("Intent %s was not pending, finalize skipped", intent.id)
        return applied

    def list_grants(self, payer_id: str, project_id: Optional[str] = None) -> List[PurchaseGrant]:
        if not payer_id or not isinstance(payer_id, str):
            raise ValidationError("Invalid payer_id", field="payer_id", value=payer_id)
        sql = f"SELECT {_GRANT_COLUMNS} FROM purchase_grants WHERE payer_id = ? AND status = 'confirmed'"
        params: tuple = (payer_id,)
        if project_id is not None:
            sql += " AND project_id = ?"
            params += (project_id,)
        sql += " ORDER BY granted_at DESC"
        return [self._row_to_grant(row) for row in self._query("list_grants", sql, params)]

    def get_grant_by_tx_hash(self, tx_hash: str) -> Optional[PurchaseGrant]:
        if not tx_hash or not isinstance(tx_hash, str):
            raise ValidationError("Invalid tx_hash", field="tx_hash", value=tx_hash)
        row = self._query(
            "get_grant_by_tx_hash",
            f"SELECT {_GRANT_COLUMNS} FROM purchase_grants WHERE tx_hash = ? AND status = 'confirmed' LIMIT 1",
            (tx_hash,),
            one=True,
        )
        return self._row_to_grant(row) if row else None
