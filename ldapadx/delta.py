"""
Incremental "what changed since last time" queries.

Active Directory stamps every change with an update sequence number
(``uSNChanged``) that only ever goes up on a given server.  :func:`changes`
runs a search restricted to entries changed after the highest number seen by
the previous call, and returns a :class:`ChangeCursor` to pass to the next
call.  Persisting the cursor between runs is the caller's business: see
:meth:`ChangeCursor.to_persistable`.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ldap.controls import LDAPControl
from ldap_filter import Filter

from .converters import ValueConverter
from .enums import Control, Operation
from .exceptions import InvalidInput, ReferralBudgetExceeded
from .results import ResultSet
from .tasks import SearchTask

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .connection import ConnectionPool, DirectoryConnection

logger = logging.getLogger(__name__)

#: The attribute carrying the update sequence number of the last change
SEQUENCE_ATTRIBUTE = "uSNChanged"
#: Requested so that deletions can be told apart from changes
DELETED_ATTRIBUTE = "isDeleted"


@dataclass(frozen=True)
class ChangeCursor:
    """
    Where a change query left off.

    Only the first four fields are persisted; :attr:`result` is the
    entries returned by the call that produced this cursor.
    """

    filter: str
    attributes: tuple[str, ...]
    #: The server the high-water mark belongs to
    server: str
    #: The server's highest committed sequence number when the query ran
    high_water_mark: int
    result: ResultSet | None = field(default=None, compare=False, repr=False)

    def to_persistable(self) -> dict[str, Any]:
        """
        Return a JSON-serializable dict.  The high-water mark is a string so
        that JSON readers limited to doubles do not lose precision.
        """
        return {
            "filter": self.filter,
            "attributes": list(self.attributes),
            "server": self.server,
            "high_water_mark": str(self.high_water_mark),
        }

    @classmethod
    def from_persistable(cls, data: dict[str, Any]) -> "ChangeCursor":
        """
        Rebuild a cursor from :meth:`to_persistable` output.

        Raises:
            InvalidInput: ``data`` is not a persisted cursor

        """
        try:
            return cls(
                filter=data["filter"],
                attributes=tuple(data["attributes"]),
                server=data["server"],
                high_water_mark=int(data["high_water_mark"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            msg = "Not a persisted change cursor"
            raise InvalidInput(msg) from e


def build_guard(searchfilter: str, lower_bound: int) -> str:
    """
    Return ``searchfilter`` ANDed with ``(uSNChanged>=lower_bound)``.

    Raises:
        InvalidInput: ``searchfilter`` cannot be parsed

    """
    try:
        Filter.parse(searchfilter)
    except Exception as e:  # ldap_filter raises its own ParseError
        msg = f'Could not parse filter "{searchfilter}"'
        raise InvalidInput(msg) from e
    # Composed as text so that escapes such as \28 reach the server unchanged
    return f"(&{searchfilter.strip()}({SEQUENCE_ATTRIBUTE}>={lower_bound}))"


def changes(
    query: "str | ChangeCursor",
    attributes: "Iterable[str] | DirectoryConnection | None" = None,
    connection: "DirectoryConnection | None" = None,
    pool: "ConnectionPool | None" = None,
    converter: ValueConverter | None = None,
) -> ChangeCursor:
    """
    Return the entries matching a filter that changed since the last call.

    The first call passes a filter and attribute names and gets every
    matching entry::

        cursor = changes("(objectClass=user)", ["cn", "mail"], connection)

    Later calls pass the previous cursor and get only what changed since,
    including deleted entries::

        cursor = changes(cursor, connection)

    If the connection is to a different server than the one the cursor came
    from, the sequence numbers cannot be compared and everything matching is
    returned again.

    Args:
        query: a filter string, or the cursor from the previous call
        attributes: attribute names to return (first call), or the
            connection (later calls)
        connection: the connection, on the first call

    Keyword Args:
        pool: connection pool for referrals
        converter: passed on to the entities returned

    Raises:
        InvalidInput: the arguments do not fit either form
        ReferralBudgetExceeded: we gave up following referrals

    Returns:
        A new cursor holding the changed entries in :attr:`ChangeCursor.result`.

    """
    show_deleted = False
    if isinstance(query, ChangeCursor):
        if connection is None:
            connection = attributes  # type: ignore[assignment]
        if connection is None or isinstance(connection, (str, list, tuple)):
            msg = "A connection is needed to continue from a change cursor"
            raise InvalidInput(msg)
        searchfilter = query.filter
        names = list(query.attributes)
        server = connection.current_server_host
        if query.server.lower() == server.lower():
            lower_bound = query.high_water_mark + 1
            show_deleted = True
        else:
            logger.info(
                "ldapadx.delta.resync cursor_server=%s server=%s", query.server, server
            )
            lower_bound = 0
    elif isinstance(query, str):
        if connection is None:
            msg = "A connection is needed for a change query"
            raise InvalidInput(msg)
        searchfilter = query
        names = list(attributes or [])  # type: ignore[arg-type]
        server = connection.current_server_host
        lower_bound = 0
    else:
        msg = f"Expected a filter or a ChangeCursor, not {query!r}"
        raise InvalidInput(msg)

    # Read before searching so changes made during the search are seen again
    high_water_mark = connection.highest_committed_sequence()
    requested = list(names)
    # An empty list asks for every attribute, isDeleted included
    if requested and DELETED_ATTRIBUTE.lower() not in {name.lower() for name in requested}:
        requested.append(DELETED_ATTRIBUTE)
    task = SearchTask(Operation.SEARCH, connection, pool=pool, converter=converter)
    task.set_filter(build_guard(searchfilter, lower_bound)).set_attributes(requested)
    if show_deleted:
        task.add_control(LDAPControl(Control.SHOW_DELETED.value, True, None))  # noqa: FBT003
    result = task.run_paged()
    if result is None:
        raise task.referral_error or ReferralBudgetExceeded("Gave up following referrals")
    logger.debug(
        "ldapadx.delta.changes server=%s since=%d found=%d", server, lower_bound, len(result)
    )
    return ChangeCursor(
        filter=searchfilter,
        attributes=tuple(names),
        server=server,
        high_water_mark=high_water_mark,
        result=result,
    )
