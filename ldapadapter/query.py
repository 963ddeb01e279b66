"""
Paged LDAP query execution.

This module provides the :py:class:`Query` class, which turns one logical
search (base DN, filter and options) into as many ``search_ext`` rounds as it
takes to honor the requested page size and item cap, and the
:py:class:`SearchHandle` class, which holds what one of those rounds brought
back until the query is closed.

Paging uses the RFC 2696 Simple Paged Results control, attached to the
connection for the duration of :py:meth:`Query.execute` and stripped off the
connection again before it returns.  Some client libraries leave the paging
control attached after the final zero-sized page request, which makes the
next unrelated search on the same connection come back empty or truncated,
so the strip is done by hand.
"""

import enum
import logging
import warnings
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from django.conf import settings
from ldap.controls import LDAPControl

from ldapadapter import ldap

from .collection import Collection
from .connection import PAGINATION_OID, Connection
from .exceptions import (
    LdapException,
    NotBound,
    QueryClosed,
    ResourceReleaseFailed,
    SearchFailed,
    UnsupportedScope,
)
from .typing import LDAPData

if TYPE_CHECKING:
    from ldap_filter import Filter

logger = logging.getLogger(__name__)


class Scope(str, enum.Enum):
    """
    How much of the tree below the base DN a query searches.
    """

    #: Only the entry named by the base DN.
    BASE = "base"
    #: The immediate children of the base DN.
    ONE = "one"
    #: The base DN and everything below it.
    SUB = "sub"


#: python-ldap scope constants for each :py:class:`Scope`.
LDAP_SCOPES: dict[Scope, int] = {
    Scope.BASE: ldap.SCOPE_BASE,  # type: ignore[attr-defined]
    Scope.ONE: ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    Scope.SUB: ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
}


def _get_config(setting_name: str, default_value: Any) -> Any:
    """
    Get a ``LDAPADAPTER_`` setting from Django settings with a fallback.
    """
    if not settings.configured:
        return default_value
    return getattr(settings, f"LDAPADAPTER_{setting_name}", default_value)


class SearchHandle:
    """
    The results of one search round.

    A handle is created as soon as the search request has been sent, and
    :py:meth:`fetch` then reads every message the server sends back for it.
    It must be released with :py:meth:`free` exactly once.

    Args:
        connection: the connection the search was sent on
        msgid: the message id python-ldap returned for the search

    """

    def __init__(self, connection: Connection, msgid: int) -> None:
        self.connection = connection
        self.msgid = msgid
        #: The raw ``(dn, attrs)`` tuples, in the order the server sent them.
        self.data: list[LDAPData] = []
        #: The response controls sent with the final search result.
        self.controls: list[LDAPControl] = []
        #: ``True`` once the server has finished answering this search.
        self.complete: bool = False
        #: ``True`` if the server stopped early because of a size limit.
        self.truncated: bool = False
        self.freed: bool = False

    @property
    def cookie(self) -> bytes:
        """
        The paging cookie the server sent with this round, or ``b""`` if
        there are no more pages.
        """
        for control in self.controls:
            if control.controlType == PAGINATION_OID:
                return control.cookie or b""  # type: ignore[attr-defined]
        return b""

    def fetch(self, timeout: float = -1) -> None:
        """
        Read every message for this search from the server.

        A size limit being hit is not an error here: the entries received
        before the server stopped are kept and :py:attr:`truncated` is set.

        Keyword Args:
            timeout: seconds to wait for each message, -1 to wait forever

        Raises:
            ldap.LDAPError: the search failed

        """
        while True:
            try:
                rtype, rdata, _, serverctrls = self.connection.resource.result3(
                    self.msgid, all=0, timeout=timeout
                )
            except ldap.SIZELIMIT_EXCEEDED:  # type: ignore[attr-defined]
                self.complete = True
                self.truncated = True
                return
            except ldap.TIMEOUT:  # type: ignore[attr-defined]
                raise
            except ldap.LDAPError:  # type: ignore[attr-defined]
                self.complete = True
                raise
            if rtype == ldap.RES_SEARCH_RESULT:  # type: ignore[attr-defined]
                self.controls = list(serverctrls or [])
                self.complete = True
                return
            self.data.extend(rdata)

    def free(self) -> None:
        """
        Release this handle, abandoning the search if the server has not
        finished answering it.

        Raises:
            ResourceReleaseFailed: the handle was already released, or the
                search could not be abandoned

        """
        if self.freed:
            msg = f"Search handle {self.msgid} was already released."
            raise ResourceReleaseFailed(msg)
        if not self.complete:
            try:
                self.connection.resource.abandon_ext(self.msgid)
            except ldap.LDAPError as e:  # type: ignore[attr-defined]
                _, message = self.connection.record_error(e)
                msg = f"Could not free results: {message}."
                raise ResourceReleaseFailed(msg) from e
        self.data = []
        self.controls = []
        self.freed = True
        logger.debug("ldapadapter.handle.free msgid=%s", self.msgid)

    def __len__(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        return f"<SearchHandle: msgid={self.msgid} entries={len(self.data)}>"


class Query:
    """
    A search against an LDAP server.

    A query is executed at most once.  The search handles it collects belong
    to it until :py:meth:`close` is called, so use it as a context manager::

        with adapter.create_query("dc=example,dc=com", "(objectClass=person)",
                                  {"page_size": 500}) as query:
            for entry in query.execute():
                ...

    Args:
        connection: the connection to search on.  It must be bound before
            :py:meth:`execute` is called.
        dn: the base DN of the search
        query: the search filter, either as a string or as an
            ``ldap_filter.Filter``

    Keyword Args:
        options: a dictionary of query options; see :py:attr:`DEFAULT_OPTIONS`

    Raises:
        ValueError: ``options`` has unknown keys or negative sizes

    """

    #: The OID of the paged results control we strip from the connection.
    PAGINATION_OID: str = PAGINATION_OID

    #: Option names and their defaults.  ``page_size`` and ``timeout`` default
    #: to ``settings.LDAPADAPTER_DEFAULT_PAGE_SIZE`` and
    #: ``settings.LDAPADAPTER_DEFAULT_TIMEOUT`` when those exist.
    DEFAULT_OPTIONS: dict[str, Any] = {
        "scope": Scope.SUB,
        "attributes": [],
        "attrs_only": False,
        "page_size": 0,
        "max_items": 0,
        "timeout": 0,
        "deref": None,
    }

    def __init__(
        self,
        connection: Connection,
        dn: str,
        query: "str | Filter",
        options: dict[str, Any] | None = None,
    ) -> None:
        self.logger = logger
        self.connection = connection
        self.dn = dn
        self.query: str = query if isinstance(query, str) else query.to_string()
        self.options = self._resolve_options(options or {})
        #: The search handles, one per round, once the query has been executed.
        self.results: list[SearchHandle] | None = None
        self.closed: bool = False

    def _resolve_options(self, options: dict[str, Any]) -> dict[str, Any]:
        unknown = set(options) - set(self.DEFAULT_OPTIONS)
        if unknown:
            msg = f"Unknown query options: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        resolved = dict(self.DEFAULT_OPTIONS)
        resolved["page_size"] = _get_config("DEFAULT_PAGE_SIZE", 0)
        resolved["timeout"] = _get_config("DEFAULT_TIMEOUT", 0)
        resolved.update(options)
        for name in ("page_size", "max_items", "timeout"):
            if resolved[name] is None or resolved[name] < 0:
                msg = f'Query option "{name}" must be 0 or greater, not {resolved[name]!r}'
                raise ValueError(msg)
        resolved["attributes"] = list(resolved["attributes"] or [])
        return resolved

    @property
    def scope(self) -> Scope:
        """
        The search scope of this query.

        Raises:
            UnsupportedScope: the ``scope`` option is not a :py:class:`Scope`

        """
        try:
            return Scope(self.options["scope"])
        except ValueError as e:
            raise UnsupportedScope(self.options["scope"]) from e

    def execute(self) -> Collection:
        """
        Run the search, if it has not been run yet, and return its results.

        Calling this again returns a new :py:class:`Collection` over the same
        search handles without talking to the server.

        Raises:
            QueryClosed: the query has been closed
            NotBound: the connection has not been bound
            UnsupportedScope: the ``scope`` option is invalid
            SearchFailed: one of the search rounds failed

        Returns:
            The entries found.

        """
        if self.closed:
            msg = "Cannot execute a query that has been closed."
            raise QueryClosed(msg)
        if self.results is None:
            # Users should use an explicit bind call first.
            if not self.connection.is_bound():
                msg = "Query execution is not possible without binding the connection first."
                raise NotBound(msg)
            scope = self.scope
            with self._dereferencing():
                self.results = self._run(scope)
        return Collection(self.connection, self)

    def _run(self, scope: Scope) -> list[SearchHandle]:
        """
        Send search rounds until the server runs out of pages or we have
        ``max_items`` entries.

        Either every round succeeds, or the handles collected so far are
        released and the error is raised.  If paging was used, pagination is
        reset on the connection exactly once either way.
        """
        max_items: int = self.options["max_items"]
        items_left = max_items
        page_size: int = self.options["page_size"]
        if max_items and page_size > max_items:
            page_size = 0
        elif max_items:
            page_size = min(page_size, max_items)
        paging = scope != Scope.BASE and page_size > 0
        cookie: bytes | str = ""

        handles: list[SearchHandle] = []
        reset_done = False
        try:
            while True:
                if paging:
                    self.connection.control_paged_result(page_size, True, cookie)  # noqa: FBT003
                # Without paging, or on the last partial page, the size
                # limit is what keeps us at max_items.
                size_limit = items_left
                if page_size and size_limit >= page_size:
                    size_limit = 0
                self.logger.debug(
                    "ldapadapter.query.round dn=%s round=%d page_size=%d size_limit=%d",
                    self.dn,
                    len(handles) + 1,
                    page_size,
                    size_limit,
                )
                handles.append(self._search(scope, size_limit))
                items_left -= min(items_left, page_size)

                if max_items and not items_left:
                    break
                if paging:
                    cookie = handles[-1].cookie
                if not cookie:
                    break
            if paging:
                reset_done = True
                self.reset_pagination()
        except Exception:
            if paging and not reset_done:
                self._reset_pagination_after_error()
            self._discard(handles)
            raise
        self.logger.debug(
            "ldapadapter.query.done dn=%s rounds=%d entries=%d",
            self.dn,
            len(handles),
            sum(len(handle) for handle in handles),
        )
        return handles

    def _search(self, scope: Scope, size_limit: int) -> SearchHandle:
        """
        Send one search round and read its results.

        Raises:
            SearchFailed: the server or the library reported an error

        """
        timeout = self.options["timeout"] or -1
        handle: SearchHandle | None = None
        try:
            msgid = self.connection.resource.search_ext(
                self.dn,
                LDAP_SCOPES[scope],
                filterstr=self.query,
                attrlist=self.options["attributes"] or None,
                attrsonly=int(self.options["attrs_only"]),
                serverctrls=self.connection.get_server_controls() or None,
                timeout=timeout,
                sizelimit=size_limit,
            )
            handle = SearchHandle(self.connection, msgid)
            handle.fetch(timeout)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            self.connection.record_error(e)
            if handle is not None:
                self._discard([handle])
            code, message = self.connection.last_error or (0, "")
            self.logger.warning(
                "ldapadapter.query.search.failed dn=%s filter=%s code=%d error=%s",
                self.dn,
                self.query,
                code,
                message,
            )
            raise SearchFailed(
                self.dn,
                self.query,
                self.options["attributes"],
                code=code,
                message=message,
            ) from e
        if handle.truncated and not size_limit:
            self.logger.warning(
                "ldapadapter.query.search.truncated dn=%s filter=%s entries=%d",
                self.dn,
                self.query,
                len(handle),
            )
        return handle

    @contextmanager
    def _dereferencing(self) -> Iterator[None]:
        """
        Apply the ``deref`` option to the connection while the query runs.
        """
        deref = self.options["deref"]
        if deref is None:
            yield
            return
        previous = self.connection.get_option(ldap.OPT_DEREF)  # type: ignore[attr-defined]
        self.connection.set_option(ldap.OPT_DEREF, deref)  # type: ignore[attr-defined]
        try:
            yield
        finally:
            self.connection.set_option(ldap.OPT_DEREF, previous)  # type: ignore[attr-defined]

    def reset_pagination(self) -> None:
        """
        End paging on the connection.

        Sends a zero-sized page request and then removes every paged results
        control from the connection's server controls.
        """
        self.connection.control_paged_result(0, False)  # noqa: FBT003
        controls = [
            control
            for control in self.connection.get_server_controls()
            if control.controlType != self.PAGINATION_OID
        ]
        self.connection.set_server_controls(controls)
        self.logger.debug("ldapadapter.query.pagination.reset dn=%s", self.dn)

    def _reset_pagination_after_error(self) -> None:
        try:
            self.reset_pagination()
        except (LdapException, ldap.LDAPError) as e:  # type: ignore[attr-defined]
            self.logger.warning(
                "ldapadapter.query.pagination.reset_failed dn=%s error=%s", self.dn, e
            )

    def _discard(self, handles: list[SearchHandle]) -> None:
        for handle in handles:
            if handle.freed:
                continue
            try:
                handle.free()
            except ResourceReleaseFailed as e:
                self.logger.warning(
                    "ldapadapter.handle.free_failed msgid=%s error=%s", handle.msgid, e
                )

    def get_handle(self, index: int = 0) -> SearchHandle | None:
        """
        Return the search handle of round ``index``, or ``None`` if there is
        no such round.
        """
        if self.results is None or not 0 <= index < len(self.results):
            return None
        return self.results[index]

    def get_handles(self) -> list[SearchHandle]:
        """
        Return the search handles of every round, in round order.
        """
        return list(self.results or [])

    def close(self) -> None:
        """
        Release every search handle this query collected.

        Closing an already closed query does nothing.  Every handle is
        released even if releasing one of them fails.

        Raises:
            ResourceReleaseFailed: a handle could not be released

        """
        if self.closed:
            return
        self.closed = True
        handles, self.results = self.results or [], None
        error: ResourceReleaseFailed | None = None
        for handle in handles:
            if handle is None or handle.freed:
                continue
            try:
                handle.free()
            except ResourceReleaseFailed as e:
                self.logger.error(
                    "ldapadapter.handle.free_failed msgid=%s error=%s", handle.msgid, e
                )
                if error is None:
                    error = e
        if error is not None:
            raise error

    def __enter__(self) -> "Query":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def __del__(self) -> None:
        if not getattr(self, "closed", True) and getattr(self, "results", None):
            warnings.warn(
                f"{self!r} was not closed; its search handles were never released",
                ResourceWarning,
                stacklevel=2,
                source=self,
            )

    def __repr__(self) -> str:
        return f'<Query: dn="{self.dn}" filter="{self.query}">'
