"""
One logical lookup against the directory: paging, referral chasing and
wrapping of the returned entries.
"""

import base64
import binascii
import logging
from functools import partial
from typing import TYPE_CHECKING

from ldap.controls import LDAPControl

from .conf import get_setting
from .connection import (
    ConnectionPool,
    DirectoryConnection,
    RawResponse,
    connection_pool,
    parse_referral,
)
from .converters import ValueConverter
from .entities import Entity
from .enums import Control, Operation, TaskState
from .exceptions import ADXError, InvalidInput, ReferralBudgetExceeded, UnsupportedControl
from .results import ResultSet

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

#: Requested on every lookup, whatever the caller asks for
IDENTITY_ATTRIBUTES = ("objectclass",)


class SearchTask:
    """
    A configurable search, list or read against a directory server.

    Configure the task with the ``set_*`` and :meth:`use_pages` methods,
    each of which returns the task, then call :meth:`run` for one page or
    :meth:`run_paged` for all of them::

        task = SearchTask(Operation.SEARCH, connection)
        users = task.set_filter("(objectClass=user)").set_attributes(["cn"]).run_paged()

    When the server answers with a referral the task reconnects to the
    referred server, reusing a connection from ``pool`` where there is one,
    and asks again, up to ``max_referrals`` times per run.  Past that,
    :meth:`run` returns ``None`` and :attr:`referral_error` says why.

    Args:
        operation: search (subtree), list (one level) or read (base entry)
        connection: the connection to start with

    Keyword Args:
        pool: where connections to referred servers are kept; the process-wide
            pool if not given
        converter: passed to every entity built from the results
        max_referrals: referral hops allowed per run;
            ``settings.LDAPADX_MAX_REFERRALS`` if not given

    """

    def __init__(
        self,
        operation: Operation,
        connection: DirectoryConnection,
        pool: ConnectionPool | None = None,
        converter: ValueConverter | None = None,
        max_referrals: int | None = None,
    ) -> None:
        if not isinstance(operation, Operation):
            msg = f"Unknown operation: {operation!r}"
            raise InvalidInput(msg)
        self.operation = operation
        self.connection = connection
        self.pool = pool if pool is not None else connection_pool
        self.converter = converter
        self.max_referrals = (
            max_referrals if max_referrals is not None else int(get_setting("MAX_REFERRALS"))
        )
        self.base: str | None = None
        self.filter = "(objectClass=*)"
        self.attributes: list[str] = []
        self.controls: list[LDAPControl] = []
        self.page_size: int | None = None
        self._cookie = b""
        #: ``True`` once the last page has been returned
        self.complete = False
        #: Referral hops taken during the current run
        self.hops = 0
        self.state = TaskState.CONFIGURED
        #: Set when the last run gave up following referrals
        self.referral_error: ReferralBudgetExceeded | None = None
        #: The connection the last lookup was answered on
        self.active_connection = connection

    # Configuration

    def set_base(self, base: str | None) -> "SearchTask":
        """
        Search below ``base``; ``None`` means the default naming context and
        ``""`` the rootDSE.
        """
        if base is not None and not isinstance(base, str):
            msg = f"The base DN must be a string, not {type(base).__name__}"
            raise InvalidInput(msg)
        self.base = base
        return self

    def set_filter(self, searchfilter: str) -> "SearchTask":
        if not isinstance(searchfilter, str) or not searchfilter.strip():
            msg = f"The filter must be a non-empty string, not {searchfilter!r}"
            raise InvalidInput(msg)
        self.filter = searchfilter
        return self

    def set_attributes(self, attributes: "Iterable[str] | None") -> "SearchTask":
        """
        Request these attributes.  ``objectClass`` is always added; an empty
        list requests every attribute.
        """
        attributes = list(attributes or [])
        for name in attributes:
            if not isinstance(name, str):
                msg = f"Attribute names must be strings, not {name!r}"
                raise InvalidInput(msg)
        self.attributes = attributes
        return self

    def add_control(self, control: LDAPControl) -> "SearchTask":
        """Send ``control`` with every request of this task."""
        self.controls.append(control)
        return self

    def use_pages(self, page_size: int | None = None, cookie: str | bytes = "") -> "SearchTask":
        """
        Turn on paging.

        Args:
            page_size: entries per page; ``settings.LDAPADX_DEFAULT_PAGE_SIZE``
                if not given
            cookie: a cookie saved from an earlier task, as returned by
                :attr:`encoded_cookie` or :attr:`cookie`, to carry on from
                where it stopped

        Raises:
            UnsupportedControl: the server does not support paged results
            InvalidInput: ``cookie`` is not valid base64

        """
        if Control.PAGED_RESULTS.value not in self.connection.supported_controls:
            msg = f"{self.connection.url} does not support paged results"
            raise UnsupportedControl(msg)
        self.page_size = int(page_size or get_setting("DEFAULT_PAGE_SIZE"))
        if isinstance(cookie, str):
            try:
                cookie = base64.b64decode(cookie, validate=True)
            except (ValueError, binascii.Error) as e:
                msg = "The paging cookie is not valid base64"
                raise InvalidInput(msg) from e
        self._cookie = cookie
        self.complete = False
        return self

    @property
    def cookie(self) -> bytes:
        """The cookie for the next page; empty when there is none."""
        return self._cookie

    @property
    def encoded_cookie(self) -> str:
        """:attr:`cookie` in base64, safe to store and pass to :meth:`use_pages`."""
        return base64.b64encode(self._cookie).decode("ascii")

    @property
    def requested_attributes(self) -> list[str] | None:
        if not self.attributes:
            return None
        attributes = list(self.attributes)
        lowered = {name.lower() for name in attributes}
        for name in IDENTITY_ATTRIBUTES:
            if name not in lowered:
                attributes.append(name)
        return attributes

    @property
    def gave_up(self) -> bool:
        return self.referral_error is not None

    # Running

    def _lookup(self, connection: DirectoryConnection, base: str) -> RawResponse:
        try:
            return connection.lookup(
                self.operation,
                base,
                self.filter,
                self.requested_attributes,
                page_size=self.page_size,
                cookie=self._cookie,
                controls=self.controls,
            )
        except ADXError:
            self.state = TaskState.FAILED
            raise

    def run(self) -> ResultSet | None:
        """
        Fetch one page (or everything, if paging is off).

        Returns:
            The entries as a :class:`ResultSet`, or ``None`` if the server
            kept referring us elsewhere past :attr:`max_referrals`.

        Raises:
            ServerRejected: the server refused the lookup
            ConnectivityFailure: the server could not be reached
            MalformedReferral: a referral had no usable server in it

        """
        if self.complete:
            # A fresh run starts over on the server the task was given
            self._cookie = b""
            self.complete = False
            self.active_connection = self.connection
        self.referral_error = None
        self.hops = 0
        connection = self.active_connection
        base = self.base if self.base is not None else self.connection.default_naming_context
        while True:
            self.state = TaskState.RUNNING
            response = self._lookup(connection, base)
            if not response.referrals:
                break
            if self.hops >= self.max_referrals:
                msg = (
                    f"Gave up following referrals after {self.hops} hops "
                    f"(last referral: {response.referrals[0]})"
                )
                logger.warning(
                    "ldapadx.task.referral.give-up hops=%d referral=%s",
                    self.hops,
                    response.referrals[0],
                )
                self.referral_error = ReferralBudgetExceeded(msg)
                self.state = TaskState.FAILED
                return None
            try:
                server = parse_referral(response.referrals[0])
            except ADXError:
                self.state = TaskState.FAILED
                raise
            connection = self.pool.get_or_create(server, partial(connection.redirect, server))
            self.hops += 1
            self.state = TaskState.REFERRAL_FOLLOWED
            logger.info("ldapadx.task.referral.follow server=%s hop=%d", server, self.hops)
        self.active_connection = connection
        self._cookie = response.cookie
        self.complete = not self._cookie
        self.state = TaskState.COMPLETE if self.complete else TaskState.PAGE_READY
        return ResultSet(
            Entity.from_wire(entry, connection=connection, converter=self.converter)
            for entry in response.entries
        )

    def run_paged(self, page_size: int | None = None) -> ResultSet | None:
        """
        Fetch every page, in order, and return them merged.

        Keyword Args:
            page_size: entries per page; turns paging on if it was not already

        Returns:
            All entries, or ``None`` if any page gave up following referrals.

        """
        if page_size is not None or self.page_size is None:
            self.use_pages(page_size or self.page_size, cookie=self._cookie)
        results = ResultSet()
        while True:
            page = self.run()
            if page is None:
                return None
            results = results.merge(page)
            if self.complete:
                return results

    def run_or_raise(self) -> ResultSet:
        """
        Like :meth:`run` but raise :class:`ReferralBudgetExceeded` instead of
        returning ``None``.
        """
        result = self.run()
        if result is None:
            raise self.referral_error or ReferralBudgetExceeded("Gave up following referrals")
        return result
