"""
Shared fixtures for the ldapadx tests: a schema cache written to a temporary
directory, and a connection that replays scripted responses.
"""

import json
import tempfile
from pathlib import Path
from typing import Any

from django.conf import settings

from ldapadx.connection import RawResponse, connection_pool
from ldapadx.converters import ValueConverter
from ldapadx.enums import Control
from ldapadx.schema import SchemaCatalog

if not settings.configured:
    settings.configure(
        LDAPADX_DEFAULT_PAGE_SIZE=1000,
        LDAPADX_MAX_REFERRALS=3,
    )

BASE_DN = "DC=example,DC=com"

#: A small slice of the Active Directory schema, in cache file form
SCHEMA: dict[str, dict[str, list[str]]] = {
    "cn": {
        "ldapdisplayname": ["cn"],
        "attributesyntax": ["2.5.5.12"],
        "omsyntax": ["64"],
        "issinglevalued": ["TRUE"],
        "systemflags": ["18"],
    },
    "ou": {
        "ldapdisplayname": ["ou"],
        "attributesyntax": ["2.5.5.12"],
        "issinglevalued": ["FALSE"],
    },
    "description": {
        "ldapdisplayname": ["description"],
        "attributesyntax": ["2.5.5.12"],
        "issinglevalued": ["FALSE"],
    },
    "mail": {
        "ldapdisplayname": ["mail"],
        "attributesyntax": ["2.5.5.12"],
        "issinglevalued": ["TRUE"],
    },
    "member": {
        "ldapdisplayname": ["member"],
        "attributesyntax": ["2.5.5.1"],
        "omsyntax": ["127"],
        "issinglevalued": ["FALSE"],
    },
    "manager": {
        "ldapdisplayname": ["manager"],
        "attributesyntax": ["2.5.5.1"],
        "omsyntax": ["127"],
        "issinglevalued": ["TRUE"],
    },
    "canonicalname": {
        "ldapdisplayname": ["canonicalName"],
        "attributesyntax": ["2.5.5.12"],
        "issinglevalued": ["FALSE"],
        "systemflags": ["134217748"],
    },
    "whenchanged": {
        "ldapdisplayname": ["whenChanged"],
        "attributesyntax": ["2.5.5.11"],
        "omsyntax": ["24"],
        "issinglevalued": ["TRUE"],
    },
    "dscorepropagationdata": {
        "ldapdisplayname": ["dSCorePropagationData"],
        "attributesyntax": ["2.5.5.11"],
        "omsyntax": ["23"],
        "issinglevalued": ["FALSE"],
    },
    "useraccountcontrol": {
        "ldapdisplayname": ["userAccountControl"],
        "attributesyntax": ["2.5.5.9"],
        "issinglevalued": ["TRUE"],
    },
    "usnchanged": {
        "ldapdisplayname": ["uSNChanged"],
        "attributesyntax": ["2.5.5.16"],
        "issinglevalued": ["TRUE"],
    },
    "isdeleted": {
        "ldapdisplayname": ["isDeleted"],
        "attributesyntax": ["2.5.5.8"],
        "issinglevalued": ["TRUE"],
    },
    "thumbnailphoto": {
        "ldapdisplayname": ["thumbnailPhoto"],
        "attributesyntax": ["2.5.5.10"],
        "issinglevalued": ["TRUE"],
    },
    "pwdlastset": {
        "ldapdisplayname": ["pwdLastSet"],
        "attributesyntax": ["2.5.5.16"],
        "issinglevalued": ["TRUE"],
    },
    "objectclass": {
        "ldapdisplayname": ["objectClass"],
        "attributesyntax": ["2.5.5.2"],
        "issinglevalued": ["FALSE"],
    },
    "user": {
        "ldapdisplayname": ["user"],
        "rdnattid": ["cn"],
        "maycontain": ["mail", "manager"],
        "systemmaycontain": ["pwdLastSet"],
    },
    "group": {
        "ldapdisplayname": ["group"],
        "rdnattid": ["cn"],
        "systemmaycontain": ["member"],
    },
    "organizationalunit": {
        "ldapdisplayname": ["organizationalUnit"],
        "rdnattid": ["ou"],
    },
}


def write_schema(directory: str | Path, schema: dict[str, dict[str, list[str]]]) -> None:
    for name, data in schema.items():
        with (Path(directory) / f"{name}.json").open("w", encoding="utf-8") as fd:
            json.dump(data, fd)


class SchemaFixtureMixin:
    """
    Gives each test ``self.catalog`` and ``self.converter`` backed by
    :data:`SCHEMA`.
    """

    strict_schema = False

    def setUp(self):
        super().setUp()
        connection_pool.clear()
        self._schema_dir = tempfile.TemporaryDirectory()
        write_schema(self._schema_dir.name, SCHEMA)
        self.catalog = SchemaCatalog(self._schema_dir.name, strict=self.strict_schema)
        self.converter = ValueConverter(self.catalog)

    def tearDown(self):
        connection_pool.clear()
        self._schema_dir.cleanup()
        super().tearDown()


def entry(dn: str, **attributes: Any) -> tuple[str, dict[str, list[bytes]]]:
    """
    Build a python-ldap style ``(dn, attrs)`` tuple; ``str`` values are
    encoded and single values wrapped in a list.
    """
    data: dict[str, list[bytes]] = {}
    for name, values in attributes.items():
        if not isinstance(values, list):
            values = [values]
        data[name] = [v.encode("utf-8") if isinstance(v, str) else v for v in values]
    return (dn, data)


def page(*entries, cookie: bytes = b"") -> RawResponse:
    return RawResponse(list(entries), cookie, [])


def referral(url: str) -> RawResponse:
    return RawResponse([], b"", [url])


class ScriptedConnection:
    """
    Stands in for :class:`~ldapadx.connection.DirectoryConnection`.

    ``responses`` are handed out one per :meth:`lookup`, in order; an
    exception in the list is raised instead.  Connections made by
    :meth:`redirect` share the script and the call log, so ``calls`` counts
    every lookup wherever it was sent.
    """

    def __init__(
        self,
        responses: list[Any] | None = None,
        url: str = "ldap://dc1.example.com",
        host: str = "dc1.example.com",
        high_water_mark: int = 1000,
        supported_controls: list[str] | None = None,
        calls: list[dict[str, Any]] | None = None,
        writes: list[tuple[Any, ...]] | None = None,
    ):
        self.responses = responses if responses is not None else []
        self.url = url
        self.config = {"url": url}
        self.current_server_host = host
        self.default_naming_context = BASE_DN
        self.high_water_mark = high_water_mark
        self.supported_controls = (
            supported_controls
            if supported_controls is not None
            else [Control.PAGED_RESULTS.value, Control.SHOW_DELETED.value]
        )
        self.calls = calls if calls is not None else []
        self.writes = writes if writes is not None else []
        self.write_error: Exception | None = None
        self.redirects: list[str] = []

    def lookup(
        self,
        operation,
        base,
        searchfilter,
        attributes,
        page_size=None,
        cookie=b"",
        controls=(),
    ):
        self.calls.append(
            {
                "url": self.url,
                "operation": operation,
                "base": base,
                "filter": searchfilter,
                "attributes": attributes,
                "page_size": page_size,
                "cookie": cookie,
                "controls": list(controls),
            }
        )
        response = self.responses.pop(0) if self.responses else RawResponse([], b"", [])
        if isinstance(response, Exception):
            raise response
        return response

    def redirect(self, server):
        self.redirects.append(server)
        connection = ScriptedConnection(
            responses=self.responses,
            url=server,
            host=server.split("://", 1)[1],
            calls=self.calls,
            writes=self.writes,
        )
        connection.write_error = self.write_error
        return connection

    def highest_committed_sequence(self):
        return self.high_water_mark

    def _write(self, *args):
        if self.write_error is not None:
            raise self.write_error
        self.writes.append(args)

    def add(self, dn, modlist):
        self._write("add", dn, modlist)

    def modify(self, dn, modlist):
        self._write("modify", dn, modlist)

    def delete(self, dn):
        self._write("delete", dn)

    def rename(self, dn, newrdn, new_superior=None, delete_old_rdn=True):
        self._write("rename", dn, newrdn, new_superior, delete_old_rdn)

    def close(self):
        self.closed = True
