"""
Schema metadata for attributes and object classes.

The catalog reads one JSON file per lowercase attribute or class name from a
cache directory (see :func:`build_schema_cache`) and memoizes what it reads
for the life of the process.  A name with no file is not an error: it just
means nothing is known about it, and callers apply no coercion and no
cardinality checks.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

from .conf import get_setting
from .enums import Operation, SystemFlags, Syntax
from .exceptions import UnknownAttribute

if TYPE_CHECKING:
    from .connection import DirectoryConnection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchemaRecord:
    """
    What the schema says about one attribute or object class.
    """

    #: Lowercase attribute or class name
    name: str
    #: The attribute syntax, ``None`` for classes and unknown syntaxes
    syntax: Syntax | None = None
    #: The ``oMSyntax``, used to tell the two time encodings apart
    om_syntax: str | None = None
    is_single_valued: bool = False
    #: Constructed attributes are computed by the server and are read-only
    is_constructed: bool = False
    #: For classes: the naming attribute of the class
    rdn_attribute: str | None = None
    #: For classes: every attribute an instance may hold
    allowed_attributes: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_entry(cls, name: str, data: dict[str, list[str]]) -> "SchemaRecord":
        """
        Build a record from the raw attributes of a schema entry, as stored in
        the cache files: a dict of lowercase attribute name to list of strings.
        """

        def first(key: str) -> str | None:
            values = data.get(key) or []
            return values[0] if values else None

        flags = int(first("systemflags") or 0)
        allowed: list[str] = []
        for key in (
            "allowedattributes",
            "maycontain",
            "mustcontain",
            "systemmaycontain",
            "systemmustcontain",
        ):
            for value in data.get(key, []):
                if value.lower() not in allowed:
                    allowed.append(value.lower())
        rdn = first("rdnattid")
        return cls(
            name=name.lower(),
            syntax=Syntax.lookup(first("attributesyntax")),
            om_syntax=first("omsyntax"),
            is_single_valued=(first("issinglevalued") or "").upper() == "TRUE",
            is_constructed=bool(flags & SystemFlags.CONSTRUCTED),
            rdn_attribute=rdn.lower() if rdn else None,
            allowed_attributes=tuple(allowed),
        )


class SchemaCatalog:
    """
    Read-only, memoizing view of the on-disk schema cache.

    Keyword Args:
        schema_dir: directory holding ``<name>.json`` files.  ``None`` gives an
            empty catalog that knows about no names.
        strict: if ``True``, :meth:`require` raises for unknown names

    """

    #: Catalogs shared per schema directory, see :meth:`default`
    _catalogs: ClassVar[dict[str, "SchemaCatalog"]] = {}
    _catalogs_lock = threading.Lock()

    def __init__(self, schema_dir: str | Path | None = None, strict: bool = False) -> None:
        self.schema_dir = Path(schema_dir) if schema_dir else None
        self.strict = strict
        self._records: dict[str, SchemaRecord | None] = {}
        self._lock = threading.Lock()

    @classmethod
    def default(cls) -> "SchemaCatalog":
        """
        Return the process-wide catalog for ``settings.LDAPADX_SCHEMA_DIR``,
        honoring ``settings.LDAPADX_STRICT_SCHEMA``.
        """
        schema_dir = get_setting("SCHEMA_DIR")
        strict = bool(get_setting("STRICT_SCHEMA"))
        key = f"{schema_dir}:{strict}"
        with cls._catalogs_lock:
            if key not in cls._catalogs:
                cls._catalogs[key] = cls(schema_dir, strict=strict)
            return cls._catalogs[key]

    @classmethod
    def clear_defaults(cls) -> None:
        with cls._catalogs_lock:
            cls._catalogs.clear()

    def _path(self, name: str) -> Path | None:
        if self.schema_dir is None:
            return None
        return self.schema_dir / f"{name}.json"

    def _load(self, name: str) -> SchemaRecord | None:
        path = self._path(name)
        if path is None or not path.is_file():
            return None
        with path.open(encoding="utf-8") as fd:
            data: dict[str, Any] = json.load(fd)
        data = {key.lower(): value for key, value in data.items()}
        return SchemaRecord.from_entry(name, data)

    def get(self, name: str) -> SchemaRecord | None:
        """
        Return the record for ``name``, or ``None`` if the cache has none.

        Lookups are case-insensitive.  Misses are memoized too.
        """
        name = name.lower()
        with self._lock:
            if name not in self._records:
                self._records[name] = self._load(name)
            return self._records[name]

    def require(self, name: str) -> SchemaRecord | None:
        """
        Like :meth:`get`, but in strict mode an unknown name raises.

        Raises:
            UnknownAttribute: strict mode is on and ``name`` is unknown

        """
        record = self.get(name)
        if record is None and self.strict:
            msg = f'"{name}" is not defined in the schema'
            raise UnknownAttribute(msg, attribute=name.lower())
        return record

    def is_populated(self) -> bool:
        """
        Return ``True`` if the cache directory holds at least one record.
        """
        if self.schema_dir is None or not self.schema_dir.is_dir():
            return False
        return any(self.schema_dir.glob("*.json"))

    def flush(self) -> None:
        """
        Forget everything memoized so the next lookups go back to disk.
        """
        with self._lock:
            self._records.clear()


def build_schema_cache(
    connection: "DirectoryConnection",
    schema_dir: str | Path,
    page_size: int | None = None,
) -> int:
    """
    Populate ``schema_dir`` with one JSON file per ``attributeSchema`` and
    ``classSchema`` entry found under the server's schema naming context.

    Existing files are overwritten.  Catalogs already memoizing this
    directory need :meth:`SchemaCatalog.flush` to see the new data.

    Args:
        connection: a bound connection
        schema_dir: the cache directory; created if needed

    Keyword Args:
        page_size: entries per page; ``settings.LDAPADX_DEFAULT_PAGE_SIZE`` if
            not given

    Returns:
        The number of records written.

    """
    path = Path(schema_dir)
    path.mkdir(parents=True, exist_ok=True)
    page_size = page_size or int(get_setting("DEFAULT_PAGE_SIZE"))
    cookie = b""
    written = 0
    while True:
        response = connection.lookup(
            Operation.LIST,
            connection.schema_naming_context,
            "(|(objectClass=attributeSchema)(objectClass=classSchema))",
            ["*"],
            page_size=page_size,
            cookie=cookie,
        )
        for _, attrs in response.entries:
            data = {
                key.lower(): [value.decode("utf-8", errors="replace") for value in values]
                for key, values in attrs.items()
            }
            names = data.get("ldapdisplayname")
            if not names:
                continue
            with (path / f"{names[0].lower()}.json").open("w", encoding="utf-8") as fd:
                json.dump(data, fd)
            written += 1
        cookie = response.cookie
        if not cookie:
            break
    logger.info("ldapadx.schema.build records=%d dir=%s", written, path)
    return written
