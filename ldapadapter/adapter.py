"""
The entry point of the LDAP adapter.

An :py:class:`Adapter` reads the configuration for one LDAP server, hands out
the :py:class:`~ldapadapter.connection.Connection` to that server and creates
:py:class:`~ldapadapter.query.Query` objects bound to it.

Example::

    adapter = Adapter(server="default")
    adapter.get_connection().bind()
    with adapter.create_query(
        "ou=people,dc=example,dc=com",
        f"(uid={adapter.escape(username)})",
        {"scope": Scope.ONE, "attributes": ["uid", "cn"]},
    ) as query:
        entries = query.execute().to_list()
"""

from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from ldap.dn import escape_dn_chars
from ldap.filter import escape_filter_chars

from .connection import Connection
from .query import Query

if TYPE_CHECKING:
    from ldap_filter import Filter


class Adapter:
    """
    Connection and query factory for one LDAP server.

    Keyword Args:
        config: the server configuration.  If not given, it is read from
            ``settings.LDAP_SERVERS[server]``.
        server: the key into ``settings.LDAP_SERVERS``

    Raises:
        ImproperlyConfigured: ``config`` was not given and
            ``settings.LDAP_SERVERS`` is missing or has no ``server`` key

    """

    #: Escape a value for use in a search filter (RFC 4515).
    ESCAPE_FILTER: int = 0x01
    #: Escape a value for use in a DN (RFC 4514).
    ESCAPE_DN: int = 0x02

    def __init__(
        self, config: dict[str, Any] | None = None, server: str = "default"
    ) -> None:
        if config is None:
            try:
                config = settings.LDAP_SERVERS[server]
            except AttributeError as e:
                msg = "settings.LDAP_SERVERS does not exist!"
                raise ImproperlyConfigured(msg) from e
            except KeyError as e:
                msg = f"settings.LDAP_SERVERS has no key '{server}'"
                raise ImproperlyConfigured(msg) from e
        self.config: dict[str, Any] = config
        self._connection: Connection | None = None

    def get_connection(self) -> Connection:
        if self._connection is None:
            self._connection = Connection(self.config)
        return self._connection

    def create_query(
        self,
        dn: str,
        query: "str | Filter",
        options: dict[str, Any] | None = None,
    ) -> Query:
        """
        Create a query on this adapter's connection.

        Args:
            dn: the base DN of the search
            query: the search filter

        Keyword Args:
            options: the query options; see :py:attr:`Query.DEFAULT_OPTIONS`

        Returns:
            An unexecuted :py:class:`~ldapadapter.query.Query`.

        """
        return Query(self.get_connection(), dn, query, options)

    def escape(self, subject: str, flags: int = ESCAPE_FILTER) -> str:
        """
        Escape ``subject`` for use in a search filter or a DN.

        Args:
            subject: the value to escape

        Keyword Args:
            flags: :py:attr:`ESCAPE_FILTER` or :py:attr:`ESCAPE_DN`

        Raises:
            ValueError: ``flags`` is not a known escape mode

        Returns:
            The escaped value.

        """
        if flags == self.ESCAPE_DN:
            return escape_dn_chars(subject)
        if flags == self.ESCAPE_FILTER:
            return escape_filter_chars(subject)
        msg = f"Unknown escape flags: {flags}"
        raise ValueError(msg)
