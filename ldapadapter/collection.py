"""
Result sets for executed queries.

A :py:class:`Collection` is the read-only view a caller gets back from
:py:meth:`ldapadapter.query.Query.execute`.  It walks every search handle the
query collected, round by round, and turns the raw python-ldap tuples into
:py:class:`Entry` objects the first time it is looked at.
"""

from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING, overload

from .exceptions import QueryClosed
from .typing import RawAttributes

if TYPE_CHECKING:
    from .connection import Connection
    from .query import Query


class Entry:
    """
    A single directory entry returned by a search.

    Args:
        dn: the distinguished name of the entry
        attributes: the raw attribute dictionary from python-ldap

    """

    def __init__(self, dn: str, attributes: RawAttributes) -> None:
        self.dn = dn
        self.attributes = attributes
        self._lookup = {name.lower(): name for name in attributes}

    def has_attribute(self, name: str) -> bool:
        return name.lower() in self._lookup

    def get_attribute(self, name: str) -> list[str | bytes] | None:
        """
        Return the values of attribute ``name``, matched case-insensitively.

        Values that are valid UTF-8 are returned as ``str``; anything else
        (``objectGUID``, ``jpegPhoto`` and the like) stays ``bytes``.

        Args:
            name: the attribute name

        Returns:
            The list of values, or ``None`` if the entry has no such attribute.

        """
        key = self._lookup.get(name.lower())
        if key is None:
            return None
        values: list[str | bytes] = []
        for value in self.attributes[key]:
            try:
                values.append(value.decode("utf-8"))
            except UnicodeDecodeError:
                values.append(value)
        return values

    def __repr__(self) -> str:
        return f"<Entry: {self.dn}>"


class Collection(Sequence):
    """
    An ordered, lazily built sequence of the entries a query found.

    Entries appear in the order of the search rounds that produced them, and
    within a round in the order the server sent them.  Search references are
    skipped.

    Once the entries have been built the collection no longer needs the
    query's search handles, so it keeps working after the query is closed.
    Looking at a collection for the first time after its query was closed
    raises :py:exc:`ldapadapter.exceptions.QueryClosed`.

    Args:
        connection: the connection the query ran on
        query: the executed query

    """

    def __init__(self, connection: "Connection", query: "Query") -> None:
        self.connection = connection
        self.query = query
        self._entries: list[Entry] | None = None

    @property
    def entries(self) -> list[Entry]:
        if self._entries is None:
            if self.query.closed:
                msg = "The query was closed before its results were read."
                raise QueryClosed(msg)
            self._entries = [
                Entry(dn, attrs)
                for handle in self.query.get_handles()
                for dn, attrs in handle.data
                # AD sends search references as (None, [urls]) tuples
                if isinstance(attrs, dict)
            ]
        return self._entries

    def to_list(self) -> list[Entry]:
        return list(self.entries)

    @overload
    def __getitem__(self, key: int) -> Entry: ...

    @overload
    def __getitem__(self, key: slice) -> list[Entry]: ...

    def __getitem__(self, key: int | slice) -> Entry | list[Entry]:
        return self.entries[key]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(self.entries)

    def __repr__(self) -> str:
        return f"<Collection: {self.query.dn} {self.query.query}>"
