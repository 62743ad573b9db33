"""
A single LDAP to database synchronization pass.

Loads every stored user, looks each one up in the directory, and writes the
directory attributes back for users whose values changed. Lookup failures
for individual users are logged and skipped; failures to open either
connection, to load users, or to write the batch end the run.
"""

import time
import logging
from typing import Dict, Any, List, Optional, Tuple

from ldap_db_sync.database import DatabaseClient, DatabaseConnectionError, DatabaseQueryError
from ldap_db_sync.diff import changed_attributes
from ldap_db_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError

module_logger = logging.getLogger(__name__)


class RunSummary:
    """Outcome of one sync run."""

    def __init__(self, dry_run: bool = False):
        self.users_scanned = 0
        self.users_changed = 0
        self.updates_applied = 0
        self.lookup_errors: List[Tuple[str, str]] = []
        self.error: Optional[str] = None
        self.runtime_seconds = 0.0
        self.dry_run = dry_run

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'users_scanned': self.users_scanned,
            'users_changed': self.users_changed,
            'updates_applied': self.updates_applied,
            'lookup_errors': len(self.lookup_errors),
            'error': self.error,
            'runtime_seconds': round(self.runtime_seconds, 3),
            'dry_run': self.dry_run,
        }

    def __repr__(self):
        return f"RunSummary({self.to_dict()})"


class SyncRun:
    """
    One load, fetch, diff and update pass.

    Every call to :meth:`execute` opens its own connections and releases
    them before returning; nothing is kept between runs.
    """

    def __init__(self, config: Dict[str, Any], dry_run: bool = False,
                 logger: Optional[logging.Logger] = None):
        self.config = config
        self.dry_run = dry_run
        self.logger = logger or module_logger

        self.ldap_config = config['ldap']
        self.database_config = config['database']
        self.error_config = config.get('error_handling', {})
        self.columns = list(self.ldap_config['attribute_map'].values())

    def execute(self) -> RunSummary:
        """
        Run one synchronization pass.

        Never raises: errors end the run early and are reported in the
        returned summary.
        """
        log = self.logger
        summary = RunSummary(dry_run=self.dry_run)
        log.info("Starting LDAP sync")
        start_time = time.monotonic()

        try:
            self._run(summary)
        except (DatabaseConnectionError, LDAPConnectionError, DatabaseQueryError) as e:
            summary.error = str(e)
        except Exception as e:
            log.error(f"Unexpected error during sync: {e}", exc_info=True)
            summary.error = f"Unexpected error: {e}"
        finally:
            summary.runtime_seconds = time.monotonic() - start_time
            log.info(f"Finished LDAP sync time={summary.runtime_seconds:.3f}s "
                     f"scanned={summary.users_scanned} changed={summary.users_changed} "
                     f"lookup_errors={len(summary.lookup_errors)}")

        return summary

    def _run(self, summary: RunSummary):
        log = self.logger

        try:
            database = DatabaseClient(self.database_config, self.columns, self.error_config)
            database.connect()
        except DatabaseConnectionError as e:
            log.error(f"Cannot establish database connection: {e}")
            raise

        try:
            try:
                users = database.fetch_users()
            except DatabaseQueryError as e:
                log.error(f"Cannot fetch users from database: {e}")
                raise
            log.debug(f"Fetched users from database amount={len(users)}")

            try:
                ldap = LDAPClient(self.ldap_config, self.error_config)
                ldap.connect()
            except LDAPConnectionError as e:
                log.error(f"Cannot establish LDAP connection: {e}")
                raise

            try:
                changes = self._collect_changes(ldap, users, summary)
            finally:
                ldap.disconnect()

            summary.users_changed = len(changes)
            if not changes:
                return

            if self.dry_run:
                log.info(f"Dry run, not updating database users updates={len(changes)}")
                return

            try:
                summary.updates_applied = database.apply_batch(changes)
            except DatabaseQueryError as e:
                log.error(f"Failed to perform database update: {e}")
                raise
            log.info(f"Updated database users submitted={len(changes)} "
                     f"matched={summary.updates_applied}")
            if summary.updates_applied < len(changes):
                log.warning(f"Some updates matched no database row "
                            f"unmatched={len(changes) - summary.updates_applied}")
        finally:
            database.disconnect()

    def _collect_changes(self, ldap: LDAPClient, users: Dict[str, Dict[str, str]],
                         summary: RunSummary) -> List[Dict[str, str]]:
        """Look up every stored user and return the directory attributes of changed ones."""
        log = self.logger
        changes = []

        for user, stored in users.items():
            summary.users_scanned += 1
            try:
                fetched = ldap.search_user(user)
            except LDAPQueryError as e:
                log.error(f"Failed to query LDAP user user={user}: {e}")
                summary.lookup_errors.append((user, str(e)))
                continue

            log.debug(f"Fetched user data user={user} database={stored} ldap={fetched}")

            changed = False
            for attribute, old, new in changed_attributes(stored, fetched):
                log.debug(f"User attribute has changed user={user} attribute={attribute} "
                          f"old={old!r} new={new!r}")
                changed = True

            if changed:
                changes.append(fetched)
                log.info(f"User has changed user={user}")

        return changes
