"""
LDAP adapter type definitions.

Type aliases for the raw data structures python-ldap hands back from a search.
"""

RawAttributes = dict[str, list[bytes]]
LDAPData = tuple[str, RawAttributes]
ErrorInfo = tuple[int, str]
