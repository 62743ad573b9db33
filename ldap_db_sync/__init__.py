"""
LDAP DB Sync - Keep user attributes in a database table in line with an LDAP directory.

The directory is authoritative. Each run reads every stored user, looks it
up in LDAP, and writes back the attributes of users whose values changed.
"""

__version__ = "1.0.0"
