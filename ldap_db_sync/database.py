"""
Database client for reading stored user attributes and writing updates.

Uses SQLAlchemy Core against a single user table. The table, its id column
and the synced columns come from configuration; the synced columns are the
values of ``ldap.attribute_map``.
"""

import logging
from typing import Dict, Any, List, Optional, Tuple
from sqlalchemy import create_engine, select, update, table, column, bindparam, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ldap_db_sync.retry import ConnectRetry, RetriesExhausted

logger = logging.getLogger(__name__)


class DatabaseConnectionError(Exception):
    """Raised when the database cannot be reached."""
    pass


class DatabaseQueryError(Exception):
    """Raised when reading or updating users fails."""
    pass


class DatabaseClient:
    """
    Relational store holding the last-synced attributes of every user.

    Use as a context manager so the connection pool is always disposed::

        with DatabaseClient(config['database'], columns, config['error_handling']) as db:
            users = db.fetch_users()
    """

    # Prefix for bound parameters; SQLAlchemy reserves bare column names in SET clauses
    PARAM_PREFIX = 'p_'

    def __init__(self, config: Dict[str, Any], columns: List[str],
                 error_config: Optional[Dict[str, Any]] = None):
        """
        Initialize database client.

        Args:
            config: Database configuration dictionary
            columns: Column names kept in sync with the directory
            error_config: Retry settings for establishing the connection
        """
        self.url = config['url']
        self.id_column = config['id_column']
        self.where = config.get('where')
        self.engine_options = dict(config.get('engine_options') or {})

        # id column first, no duplicates, stable order
        self.columns = [self.id_column] + [c for c in dict.fromkeys(columns) if c != self.id_column]
        self.table = table(config['table'], *(column(name) for name in self.columns))

        self.retry = ConnectRetry(error_config)

        self.engine: Optional[Engine] = None

    def connect(self) -> bool:
        """
        Create the engine and verify that a connection can be opened.

        Raises:
            DatabaseConnectionError: If the database is unreachable after all retries
        """
        try:
            self.engine = create_engine(self.url, **self.engine_options)
        except (SQLAlchemyError, ImportError, ValueError) as e:
            raise DatabaseConnectionError(f"Invalid database configuration: {e}")

        try:
            self.retry.open("Database", self._ping, retry_on=(SQLAlchemyError,))
        except RetriesExhausted as e:
            self.engine.dispose()
            self.engine = None
            raise DatabaseConnectionError(f"Cannot connect to database: {e.last_exception}")

        logger.debug("Connected to database")
        return True

    def _ping(self):
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))

    def disconnect(self):
        """Dispose of the connection pool."""
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            logger.debug("Database connection closed")

    def fetch_users(self) -> Dict[str, Dict[str, str]]:
        """
        Read every user with its stored attributes.

        NULL columns are left out of the user's attribute mapping.

        Returns:
            Mapping of user identifier to attribute mapping

        Raises:
            DatabaseQueryError: If the query fails
        """
        if self.engine is None:
            raise DatabaseQueryError("Not connected to database")

        query = select(*(self.table.c[name] for name in self.columns))
        if self.where:
            query = query.where(text(self.where))

        users = {}
        try:
            with self.engine.connect() as connection:
                for row in connection.execute(query).mappings():
                    user_id = row[self.id_column]
                    if user_id is None:
                        continue
                    users[str(user_id)] = {
                        name: str(value) for name, value in row.items() if value is not None
                    }
        except SQLAlchemyError as e:
            raise DatabaseQueryError(f"Failed to fetch users: {e}")

        return users

    def apply_batch(self, changes: List[Dict[str, str]]) -> int:
        """
        Write a batch of attribute mappings in a single transaction.

        Each mapping must contain the id column. Only columns present in a
        mapping are written; mappings are grouped by their column set so
        every group is one executemany statement.

        Args:
            changes: Attribute mappings to persist

        Returns:
            Number of rows the updates matched. Drivers that cannot report
            this for executemany count every submitted mapping.

        Raises:
            DatabaseQueryError: If the update fails; nothing is committed
        """
        if self.engine is None:
            raise DatabaseQueryError("Not connected to database")

        groups: Dict[Tuple[str, ...], List[Dict[str, str]]] = {}
        for record in changes:
            if self.id_column not in record:
                raise DatabaseQueryError(f"Update record is missing id column {self.id_column}")
            unknown = set(record) - set(self.columns)
            if unknown:
                raise DatabaseQueryError(f"Update record has unknown columns: {sorted(unknown)}")
            key = tuple(name for name in self.columns if name in record and name != self.id_column)
            if key:
                groups.setdefault(key, []).append(record)

        matched = 0
        try:
            with self.engine.begin() as connection:
                reliable_rowcount = connection.dialect.supports_sane_multi_rowcount
                for set_columns, records in groups.items():
                    statement = self._update_statement(set_columns)
                    params = [
                        {self.PARAM_PREFIX + name: value for name, value in record.items()}
                        for record in records
                    ]
                    result = connection.execute(statement, params)
                    if result.rowcount >= 0 and (len(params) == 1 or reliable_rowcount):
                        matched += result.rowcount
                    else:
                        matched += len(params)
        except SQLAlchemyError as e:
            raise DatabaseQueryError(f"Failed to update users: {e}")

        return matched

    def _update_statement(self, set_columns: Tuple[str, ...]):
        id_col = self.table.c[self.id_column]
        statement = (
            update(self.table)
            .where(id_col == bindparam(self.PARAM_PREFIX + self.id_column))
            .values({name: bindparam(self.PARAM_PREFIX + name) for name in set_columns})
        )
        if self.where:
            statement = statement.where(text(self.where))
        return statement

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
