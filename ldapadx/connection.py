"""
The python-ldap backed connection to a directory server, and the pool of
connections opened while following referrals.
"""

import logging
import re
import threading
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any, NamedTuple, cast
from urllib.parse import urlparse

from ldap.controls import LDAPControl, SimplePagedResultsControl

from ldapadx import ldap

from .conf import get_server_config
from .enums import Operation
from .exceptions import MalformedReferral, translate_ldap_error
from .typing import AddModList, ModifyModList, WireAttributes, WireEntry

logger = logging.getLogger(__name__)

#: scheme://host[:port] at the start of a referral URL
REFERRAL_RE = re.compile(r"^ldaps?://[a-z0-9_\-.]+(?::\d+)?", re.IGNORECASE)

#: The rootDSE attributes we read
ROOT_DSE_ATTRIBUTES = [
    "dnshostname",
    "defaultnamingcontext",
    "schemanamingcontext",
    "highestcommittedusn",
    "supportedcontrol",
    "currenttime",
]


def parse_referral(referral: str) -> str:
    """
    Return the ``scheme://host[:port]`` part of a referral URL, dropping the
    DN and anything after it.

    Raises:
        MalformedReferral: ``referral`` does not start with an LDAP URL

    """
    match = REFERRAL_RE.match(referral.strip())
    if not match:
        msg = f'Could not find a server in referral "{referral}"'
        raise MalformedReferral(msg)
    return match.group(0)


class RawResponse(NamedTuple):
    """
    What one search request returned.
    """

    #: ``(dn, attributes)`` for every entry, references excluded
    entries: list[WireEntry]
    #: The paging cookie; empty when there are no more pages
    cookie: bytes
    #: Referral URLs, when the server sent us elsewhere
    referrals: list[str]


class DirectoryConnection:
    """
    A bound connection to one directory server.

    The python-ldap object is created and bound on first use.

    Args:
        config: connection settings, as in one ``LDAP_SERVERS`` entry

    """

    def __init__(self, config: dict[str, Any]) -> None:
        self.config = config
        self._ldap_object: Any = None
        self._root_dse: WireAttributes | None = None

    @classmethod
    def from_settings(cls, server: str = "default", key: str = "read") -> "DirectoryConnection":
        """
        Build a connection from ``settings.LDAP_SERVERS[server][key]``.
        """
        return cls(get_server_config(server, key))

    @property
    def url(self) -> str:
        return self.config["url"]

    def _connect(self) -> Any:  # noqa: PLR0912
        """
        Create and bind a new python-ldap connection object.

        Raises:
            ValueError: the ``tls_verify`` setting is invalid
            OSError: a configured certificate or key file does not exist or is
                not a file
            InvalidCredentials: the server refused our bind
            ServerUnreachable: the server could not be contacted

        Returns:
            A bound ``LDAPObject``.

        """
        config = self.config
        ldap_object = ldap.initialize(config["url"])
        # Referrals are chased by SearchTask, not by libldap
        ldap_object.set_option(ldap.OPT_REFERRALS, 0)
        ldap_object.set_option(ldap.OPT_PROTOCOL_VERSION, ldap.VERSION3)
        timeout = float(config.get("timeout", 15.0))
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, timeout)
        ldap_object.set_option(ldap.OPT_TIMEOUT, timeout)
        if sizelimit := config.get("sizelimit", None):
            ldap_object.set_option(ldap.OPT_SIZELIMIT, int(sizelimit))
        tls_verify = config.get("tls_verify", "never")
        if tls_verify == "never":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)
        elif tls_verify == "always":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)
        else:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ValueError(msg)
        for setting, option, label in (
            ("tls_ca_certfile", ldap.OPT_X_TLS_CACERTFILE, "CA Certificate file"),
            ("tls_certfile", ldap.OPT_X_TLS_CERTFILE, "TLS Certificate file"),
            ("tls_keyfile", ldap.OPT_X_TLS_KEYFILE, "TLS Key file"),
        ):
            if filename := config.get(setting, None):
                path = Path(filename)
                if not path.exists():
                    msg = f"{label} does not exist: {filename}"
                    raise OSError(msg)
                if not path.is_file():
                    msg = f"{label} is not a file: {filename}"
                    raise OSError(msg)
                ldap_object.set_option(option, filename)
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)
        try:
            if config.get("use_starttls", True) and not config["url"].lower().startswith(
                "ldaps://"
            ):
                ldap_object.start_tls_s()
            ldap_object.simple_bind_s(config.get("user", ""), config.get("password", ""))
        except ldap.LDAPError as e:
            raise translate_ldap_error(e, server=self.url, bind=True) from e
        logger.debug("ldapadx.connection.bind url=%s", self.url)
        return ldap_object

    @property
    def ldap_object(self) -> Any:
        """The bound python-ldap object, connecting first if need be."""
        if self._ldap_object is None:
            self._ldap_object = self._connect()
        return self._ldap_object

    def close(self) -> None:
        if self._ldap_object is not None:
            try:
                self._ldap_object.unbind_s()
            except ldap.LDAPError:
                logger.debug("ldapadx.connection.unbind.failed url=%s", self.url)
            self._ldap_object = None

    def redirect(self, server: str) -> "DirectoryConnection":
        """
        Return a new connection to ``server`` with the same settings and
        credentials as this one.

        Args:
            server: ``scheme://host[:port]`` of the server to connect to

        """
        config = dict(self.config)
        config["url"] = server
        # The base DN of the original server does not apply elsewhere
        config.pop("basedn", None)
        return self.__class__(config)

    # rootDSE

    def root_dse(self, refresh: bool = False) -> WireAttributes:
        """
        Return the raw attributes of the rootDSE, read once and cached unless
        ``refresh`` is given.
        """
        if self._root_dse is None or refresh:
            response = self.lookup(
                Operation.READ, "", "(objectClass=*)", ROOT_DSE_ATTRIBUTES
            )
            attributes: WireAttributes = {}
            if response.entries:
                attributes = {
                    key.lower(): value for key, value in response.entries[0][1].items()
                }
            self._root_dse = attributes
        return self._root_dse

    def _root_dse_value(self, name: str, refresh: bool = False) -> str | None:
        values = self.root_dse(refresh=refresh).get(name, [])
        return values[0].decode("utf-8") if values else None

    @property
    def current_server_host(self) -> str:
        """
        The DNS name of the server we are talking to, used to tell whether a
        change cursor came from this server.
        """
        host = self._root_dse_value("dnshostname")
        if host:
            return host.lower()
        return (urlparse(self.url).hostname or self.url).lower()

    @property
    def default_naming_context(self) -> str:
        return self.config.get("basedn") or self._root_dse_value("defaultnamingcontext") or ""

    @property
    def schema_naming_context(self) -> str:
        return self._root_dse_value("schemanamingcontext") or ""

    @property
    def supported_controls(self) -> list[str]:
        return [
            value.decode("utf-8")
            for value in self.root_dse().get("supportedcontrol", [])
        ]

    def highest_committed_sequence(self) -> int:
        """
        Return the server's current ``highestCommittedUSN``, read fresh.
        """
        return int(self._root_dse_value("highestcommittedusn", refresh=True) or 0)

    # Operations

    def _get_pctrls(self, serverctrls: Iterable[LDAPControl]) -> list[SimplePagedResultsControl]:
        """
        Return the paged results controls among the returned controls.
        """
        return [
            cast("SimplePagedResultsControl", c)
            for c in serverctrls
            if c.controlType == SimplePagedResultsControl.controlType
        ]

    @staticmethod
    def _referrals(exc: Exception) -> list[str]:
        """
        Pull the referral URLs out of the ``info`` of an ``ldap.REFERRAL``,
        which looks like ``"Referral:\\nldap://host/DC=example,DC=com"``.
        """
        info = ""
        if exc.args and isinstance(exc.args[0], dict):
            info = exc.args[0].get("info", "") or ""
        if isinstance(info, bytes):
            info = info.decode("utf-8", errors="replace")
        referrals = [
            line.strip()
            for line in info.splitlines()
            if line.strip().lower().startswith("ldap")
        ]
        if not referrals:
            msg = f'The server sent a referral with no URL: "{info}"'
            raise MalformedReferral(msg)
        return referrals

    def lookup(  # noqa: PLR0913
        self,
        operation: Operation,
        base: str,
        searchfilter: str,
        attributes: Sequence[str] | None,
        page_size: int | None = None,
        cookie: bytes = b"",
        controls: Sequence[LDAPControl] = (),
    ) -> RawResponse:
        """
        Send one search request and collect its response.

        Args:
            operation: search, list or read
            base: the base DN
            searchfilter: the filter string
            attributes: attribute names to return; ``None`` for all

        Keyword Args:
            page_size: if given, attach a paged results control
            cookie: the cookie from the previous page
            controls: extra server controls to send

        Raises:
            ServerRejected: the server refused the search
            ConnectivityFailure: the server could not be reached or timed out
            MalformedReferral: the server referred us without saying where

        Returns:
            The entries, the next page cookie and any referrals.

        """
        serverctrls = list(controls)
        if page_size:
            serverctrls.append(
                SimplePagedResultsControl(True, size=page_size, cookie=cookie)  # noqa: FBT003
            )
        try:
            msgid = self.ldap_object.search_ext(
                base,
                operation.scope,
                searchfilter,
                list(attributes) if attributes else None,
                serverctrls=serverctrls,
            )
            _, rdata, _, rctrls = self.ldap_object.result3(msgid)
        except ldap.REFERRAL as e:
            return RawResponse([], b"", self._referrals(e))
        except ldap.LDAPError as e:
            raise translate_ldap_error(e, server=self.url) from e
        entries: list[WireEntry] = []
        for dn, attrs in rdata:
            # Search continuation references come back as (None, [urls])
            if isinstance(attrs, dict):
                entries.append((dn, attrs))
        next_cookie = b""
        if page_size:
            paged_controls = self._get_pctrls(rctrls or [])
            if paged_controls and paged_controls[0].cookie:
                next_cookie = paged_controls[0].cookie
        return RawResponse(entries, next_cookie, [])

    def add(self, dn: str, modlist: AddModList) -> None:
        try:
            self.ldap_object.add_s(dn, modlist)
        except ldap.LDAPError as e:
            raise translate_ldap_error(e, server=self.url) from e
        logger.info("ldapadx.connection.add dn=%s", dn)

    def modify(self, dn: str, modlist: ModifyModList) -> None:
        try:
            self.ldap_object.modify_s(dn, modlist)
        except ldap.LDAPError as e:
            raise translate_ldap_error(e, server=self.url) from e
        logger.info("ldapadx.connection.modify dn=%s attributes=%d", dn, len(modlist))

    def delete(self, dn: str) -> None:
        try:
            self.ldap_object.delete_s(dn)
        except ldap.LDAPError as e:
            raise translate_ldap_error(e, server=self.url) from e
        logger.info("ldapadx.connection.delete dn=%s", dn)

    def rename(
        self,
        dn: str,
        newrdn: str,
        new_superior: str | None = None,
        delete_old_rdn: bool = True,
    ) -> None:
        try:
            self.ldap_object.rename_s(dn, newrdn, new_superior, int(delete_old_rdn))
        except ldap.LDAPError as e:
            raise translate_ldap_error(e, server=self.url) from e
        logger.info(
            "ldapadx.connection.rename dn=%s newrdn=%s superior=%s", dn, newrdn, new_superior
        )

    def __repr__(self) -> str:
        return f"<DirectoryConnection {self.url}>"


class ConnectionPool:
    """
    Connections opened to follow referrals, keyed by server.

    Entries are added the first time a server is referred to and are kept
    for the life of the process; :meth:`clear` exists for tests and
    shutdown.  Only :meth:`get_or_create` is serialized: a connection taken
    from the pool must not be used by two threads at once.
    """

    def __init__(self) -> None:
        self._connections: dict[str, DirectoryConnection] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self, server: str, factory: Callable[[], DirectoryConnection]
    ) -> DirectoryConnection:
        """
        Return the pooled connection for ``server``, calling ``factory`` to
        make one if there is none yet.
        """
        key = server.lower()
        with self._lock:
            if key not in self._connections:
                logger.debug("ldapadx.pool.create server=%s", key)
                self._connections[key] = factory()
            return self._connections[key]

    def clear(self) -> None:
        with self._lock:
            for connection in self._connections.values():
                connection.close()
            self._connections.clear()

    def __contains__(self, server: str) -> bool:
        return server.lower() in self._connections

    def __len__(self) -> int:
        return len(self._connections)


#: The process-wide referral connection pool
connection_pool = ConnectionPool()
