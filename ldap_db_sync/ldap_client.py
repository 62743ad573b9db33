"""
LDAP client for looking up authoritative user attributes.

The directory is queried once per known user. Results are translated from
LDAP attribute names to database column names using the configured
attribute map, so they can be compared directly with stored records.
"""

import logging
import ssl
from typing import Dict, Any, Optional
from ldap3 import Server, Connection, SUBTREE, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from ldap_db_sync.retry import ConnectRetry, RetriesExhausted

logger = logging.getLogger(__name__)


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class LDAPClient:
    """
    LDAP client for per-user attribute lookups.

    Use as a context manager so the connection is always released::

        with LDAPClient(config['ldap'], config['error_handling']) as ldap:
            attrs = ldap.search_user('alice')
    """

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
            error_config: Retry settings for establishing the connection
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config.get('bind_dn')
        self.bind_password = config.get('bind_password')
        self.user_base_dn = config['user_base_dn']
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.id_attribute = config.get('id_attribute', 'uid')
        self.attribute_map = dict(config.get('attribute_map') or {})

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.retry = ConnectRetry(error_config)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                connect_timeout=self.config.get('connection_timeout')
            )
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        try:
            self.connection = self.retry.open(
                "LDAP", self._open_connection, retry_on=(LDAPException, LDAPConnectionError)
            )
        except RetriesExhausted as e:
            raise LDAPConnectionError(f"Failed to connect to LDAP {self.server_url}: {e.last_exception}")

        self._connected = True
        logger.debug(f"Connected to LDAP server {self.server_url}")
        return True

    def _open_connection(self) -> Connection:
        """Open, optionally StartTLS, and bind a single connection."""
        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            read_only=True
        )
        try:
            if not connection.open():
                raise LDAPConnectionError(f"Failed to open connection: {connection.result}")

            if self.start_tls and not self.use_ssl:
                if not connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {connection.result}")

            if not connection.bind():
                raise LDAPConnectionError(f"Bind failed: {connection.result}")
        except (LDAPException, LDAPConnectionError):
            try:
                connection.unbind()
            except LDAPException:
                pass
            raise

        return connection

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def search_user(self, user_id: str) -> Dict[str, str]:
        """
        Look up one user and return its attributes keyed by database column.

        Attributes the directory does not return are left out of the result.
        Multi-valued attributes contribute their first value.

        Args:
            user_id: Value of the id attribute to search for

        Returns:
            Mapping of database column name to attribute value

        Raises:
            LDAPQueryError: If the search fails or does not match exactly one entry
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        search_filter = f"(&{self.user_filter}({self.id_attribute}={escape_filter_chars(user_id)}))"

        try:
            success = self.connection.search(
                search_base=self.user_base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=list(self.attribute_map)
            )
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP search failed: {e}")
        except Exception as e:
            raise LDAPQueryError(f"Unexpected error during LDAP search: {e}")

        entries = self.connection.entries
        if not success or not entries:
            raise LDAPQueryError(f"No LDAP entry found for {self.id_attribute}={user_id}")
        if len(entries) > 1:
            raise LDAPQueryError(f"Found {len(entries)} LDAP entries for {self.id_attribute}={user_id}")

        try:
            return self._map_attributes(entries[0].entry_attributes_as_dict)
        except (UnicodeDecodeError, ValueError) as e:
            raise LDAPQueryError(f"Cannot read LDAP attributes for {self.id_attribute}={user_id}: {e}")

    def _map_attributes(self, entry_attributes: Dict[str, Any]) -> Dict[str, str]:
        """Translate LDAP attribute names to columns; names match case-insensitively."""
        values_by_name = {name.lower(): values for name, values in entry_attributes.items()}

        attributes = {}
        for ldap_attr, column in self.attribute_map.items():
            values = values_by_name.get(ldap_attr.lower())
            if isinstance(values, (list, tuple)):
                if not values:
                    continue
                value = values[0]
            elif values is None:
                continue
            else:
                value = values
            if isinstance(value, bytes):
                value = value.decode('utf-8')
            attributes[column] = str(value)
        return attributes

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
