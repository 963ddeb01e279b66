"""
Exceptions raised by the LDAP adapter.

Every failure raised from this package derives from :py:class:`LdapException`,
so callers that do not care about the exact reason can catch just that.
"""


class LdapException(Exception):
    """Base class for all adapter errors."""


class ConnectionFailed(LdapException):
    """The LDAP server could not be reached or the bind failed."""


class InvalidCredentials(ConnectionFailed):
    """The LDAP server rejected the bind credentials."""


class NotBound(LdapException):
    """A query was executed on a connection that has not been bound."""


class UnsupportedScope(LdapException):
    """The requested search scope is not one of base, one or sub."""

    def __init__(self, scope: object) -> None:
        self.scope = scope
        super().__init__(f'Could not search in scope "{scope}".')


class QueryClosed(LdapException):
    """A query or one of its result sets was used after the query was closed."""


class ResourceReleaseFailed(LdapException):
    """A search handle could not be released."""


class SearchFailed(LdapException):
    """
    A search round failed.

    Carries enough context to diagnose the failure without re-running it.

    Args:
        dn: the base DN of the search
        query: the search filter
        attributes: the requested attribute names

    Keyword Args:
        code: the LDAP result code, if the server sent one
        message: the LDAP error text, if any

    """

    def __init__(
        self,
        dn: str,
        query: str,
        attributes: list[str],
        code: int | None = None,
        message: str | None = None,
    ) -> None:
        self.dn = dn
        self.query = query
        self.attributes = list(attributes)
        self.code = code
        self.message = message
        msg = (
            f'Could not complete search with dn "{dn}", query "{query}" and '
            f'filters "{",".join(self.attributes)}".'
        )
        if code:
            msg += f" LDAP error was [{code}] {message}"
        super().__init__(msg)
