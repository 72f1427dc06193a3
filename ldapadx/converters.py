"""
Conversion of attribute values between their wire form (``bytes`` as
python-ldap returns them) and native Python values.

Which conversion applies is decided first by a table of attribute names with
special handling, then by the attribute's syntax in the schema.  Attributes
the schema knows nothing about are left alone.
"""

import base64
import datetime
import uuid
from collections.abc import Callable, Iterable
from functools import partial
from typing import Any, NamedTuple

import pytz

from .enums import Syntax
from .exceptions import ConversionFailure, NotPersisted
from .schema import SchemaCatalog, SchemaRecord

#: Seconds between 1601-01-01 (the Windows epoch) and 1970-01-01
EPOCH_OFFSET = 11644473600
#: 100ns intervals per second
INTERVALS_PER_SECOND = 10_000_000
#: Stored in Windows timestamps to mean "never"
NEVER = 0x7FFFFFFFFFFFFFFF

#: Large integers holding a Windows timestamp, exposed as Unix epoch seconds
WINDOWS_TIMESTAMPS = frozenset(
    {
        "pwdlastset",
        "accountexpires",
        "lastlogon",
        "lastlogontimestamp",
        "lockouttime",
        "badpasswordtime",
    }
)
PASSWORDS = frozenset({"unicodepwd"})
GUIDS = frozenset({"objectguid", "msexchmailboxguid"})
#: rootDSE attributes, which are not in the schema
GENERALIZED_TIMES = frozenset({"currenttime"})
BOOLEANS = frozenset({"issynchronized", "isglobalcatalogready"})

#: Digits in a timestamp (without fraction or ``Z``) to its strptime format
TIME_FORMATS = {
    14: "%Y%m%d%H%M%S",
    12: "%y%m%d%H%M%S",
}
#: oMSyntax of the two encodings of the Time syntax
OM_UTC_TIME = "23"
OM_GENERALIZED_TIME = "24"


class Transform(NamedTuple):
    #: wire value (bytes) to native value
    read: Callable[[Any], Any]
    #: native value to wire value (str or bytes)
    write: Callable[[Any], Any]


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _read_untyped(value: Any) -> Any:
    # Without a schema we only know that text should look like text.
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return value
    return value


def _read_boolean(value: Any) -> bool:
    text = _text(value).upper()
    if text not in ("TRUE", "FALSE"):
        msg = f'"{text}" is not a directory boolean'
        raise ConversionFailure(msg)
    return text == "TRUE"


def _write_boolean(value: Any) -> str:
    if isinstance(value, (str, bytes)):
        return "TRUE" if _text(value).upper() == "TRUE" else "FALSE"
    return "TRUE" if value else "FALSE"


def _read_integer(value: Any) -> int:
    try:
        return int(_text(value))
    except ValueError as e:
        msg = f'"{_text(value)}" is not an integer'
        raise ConversionFailure(msg) from e


def _write_integer(value: Any) -> str:
    try:
        return str(int(value))
    except (TypeError, ValueError) as e:
        msg = f'"{value}" is not an integer'
        raise ConversionFailure(msg) from e


def _read_binary(value: Any) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return base64.b64encode(value).decode("ascii")


def _write_binary(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    try:
        return base64.b64decode(value, validate=True)
    except (TypeError, ValueError) as e:
        msg = "Binary values must be given base64 encoded"
        raise ConversionFailure(msg) from e


def _read_time(value: Any, lengths: tuple[int, ...] = (14, 12)) -> datetime.datetime:
    # UTC time is YYMMDDHHMMSSZ, generalized time YYYYMMDDHHMMSS.0Z.  When
    # the schema does not say which one to expect, the length tells them apart.
    text = _text(value).strip()
    if text.upper().endswith("Z"):
        text = text[:-1]
    text = text.split(".", 1)[0]
    fmt = TIME_FORMATS.get(len(text)) if len(text) in lengths else None
    if fmt is None:
        msg = f'"{_text(value)}" is not a directory timestamp'
        raise ConversionFailure(msg)
    try:
        parsed = datetime.datetime.strptime(text, fmt)  # noqa: DTZ007
    except ValueError as e:
        msg = f'"{_text(value)}" is not a directory timestamp'
        raise ConversionFailure(msg) from e
    return pytz.utc.localize(parsed)


def _write_time(value: Any, fmt: str = "%Y%m%d%H%M%S.0Z") -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = datetime.datetime.fromtimestamp(value, tz=pytz.utc)
    if isinstance(value, (str, bytes)):
        # Accept anything we could have read, and normalize it
        value = _read_time(value)
    if not isinstance(value, datetime.datetime):
        msg = f"Cannot store {value!r} as a directory timestamp"
        raise ConversionFailure(msg)
    if value.tzinfo is None:
        value = pytz.utc.localize(value)
    return value.astimezone(pytz.utc).strftime(fmt)


def _read_windows_timestamp(value: Any) -> int:
    ticks = _read_integer(value)
    if ticks in (0, NEVER):
        return 0
    return ticks // INTERVALS_PER_SECOND - EPOCH_OFFSET


def _write_windows_timestamp(value: Any) -> str:
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            value = pytz.utc.localize(value)
        value = int(value.timestamp())
    seconds = int(_write_integer(value))
    if seconds in (0, -1):
        return str(seconds)
    return str((seconds + EPOCH_OFFSET) * INTERVALS_PER_SECOND)


def _write_password(value: Any) -> bytes:
    return f'"{_text(value)}"'.encode("utf-16-le")


def _read_guid(value: Any) -> str:
    if isinstance(value, str):
        return str(uuid.UUID(value))
    try:
        return str(uuid.UUID(bytes_le=value))
    except ValueError as e:
        msg = "GUIDs must be exactly 16 bytes"
        raise ConversionFailure(msg) from e


def _write_guid(value: Any) -> bytes:
    if isinstance(value, bytes) and len(value) == 16:  # noqa: PLR2004
        return value
    try:
        return uuid.UUID(_text(value)).bytes_le
    except ValueError as e:
        msg = f'"{value}" is not a GUID'
        raise ConversionFailure(msg) from e


def _write_dn_reference(value: Any) -> str:
    if isinstance(value, (str, bytes)):
        return _text(value)
    # An Entity: only usable once it exists on the server
    dn = getattr(value, "dn", None)
    if not dn:
        msg = "Referenced object is not stored on the server"
        raise NotPersisted(msg)
    return dn


UNTYPED = Transform(_read_untyped, lambda value: value)
TEXT = Transform(_text, _text)
BOOLEAN = Transform(_read_boolean, _write_boolean)
INTEGER = Transform(_read_integer, _write_integer)
BINARY = Transform(_read_binary, _write_binary)
TIME = Transform(_read_time, _write_time)
GENERALIZED_TIME = Transform(partial(_read_time, lengths=(14,)), _write_time)
UTC_TIME = Transform(
    partial(_read_time, lengths=(12,)), partial(_write_time, fmt="%y%m%d%H%M%SZ")
)
WINDOWS_TIMESTAMP = Transform(_read_windows_timestamp, _write_windows_timestamp)
PASSWORD = Transform(lambda value: value, _write_password)
GUID = Transform(_read_guid, _write_guid)
DN_REFERENCE = Transform(_text, _write_dn_reference)

SYNTAX_TRANSFORMS: dict[Syntax, Transform] = {
    Syntax.BINARY: BINARY,
    Syntax.SID: BINARY,
    Syntax.SECURITY_DESCRIPTOR: BINARY,
    Syntax.BOOLEAN: BOOLEAN,
    Syntax.INTEGER: INTEGER,
    Syntax.LARGE_INTEGER: INTEGER,
    Syntax.DN_REFERENCE: DN_REFERENCE,
    Syntax.TIME: TIME,
}
#: oMSyntax of a Time attribute to the transform for its encoding
TIME_ENCODINGS: dict[str, Transform] = {
    OM_UTC_TIME: UTC_TIME,
    OM_GENERALIZED_TIME: GENERALIZED_TIME,
}


class ValueConverter:
    """
    Converts attribute values between wire and native form.

    The converter holds no state beyond the catalog it consults, so one
    instance can be shared freely.

    Keyword Args:
        catalog: the schema to consult; :meth:`SchemaCatalog.default` if not
            given

    """

    def __init__(self, catalog: SchemaCatalog | None = None) -> None:
        self.catalog = catalog if catalog is not None else SchemaCatalog.default()

    def transform(self, name: str, record: SchemaRecord | None = None) -> Transform:
        """
        Return the :class:`Transform` used for the attribute ``name``.

        Args:
            name: the attribute name

        Keyword Args:
            record: the attribute's schema record, if the caller already has it

        """
        name = name.lower()
        if name in WINDOWS_TIMESTAMPS:
            return WINDOWS_TIMESTAMP
        if name in PASSWORDS:
            return PASSWORD
        if name in GUIDS:
            return GUID
        if name in GENERALIZED_TIMES:
            return TIME
        if name in BOOLEANS:
            return BOOLEAN
        if record is None:
            record = self.catalog.get(name)
        if record is None:
            return UNTYPED
        if record.syntax is None:
            return TEXT
        if record.syntax == Syntax.TIME and record.om_syntax in TIME_ENCODINGS:
            return TIME_ENCODINGS[record.om_syntax]
        return SYNTAX_TRANSFORMS.get(record.syntax, TEXT)

    def to_native(
        self, name: str, values: Iterable[Any], record: SchemaRecord | None = None
    ) -> list[Any]:
        """
        Convert the wire values of attribute ``name`` to native values,
        keeping their order.
        """
        read = self.transform(name, record=record).read
        return [read(value) for value in values]

    def to_wire(
        self, name: str, values: Iterable[Any], record: SchemaRecord | None = None
    ) -> list[bytes]:
        """
        Convert native values of attribute ``name`` to the ``bytes`` python-ldap
        sends, keeping their order.

        Raises:
            NotPersisted: a DN reference points at an entity with no DN yet
            ConversionFailure: a value cannot be represented on the wire

        """
        write = self.transform(name, record=record).write
        wire: list[bytes] = []
        for value in values:
            converted = write(value)
            if isinstance(converted, bytes):
                wire.append(converted)
            else:
                wire.append(str(converted).encode("utf-8"))
        return wire

    @staticmethod
    def escape_guid(value: str | bytes) -> str:
        """
        Return a GUID as backslash-escaped hex bytes in wire order, the form
        a search filter needs, e.g. ``(objectGUID=\\d4\\3f...)``.
        """
        raw = _write_guid(value)
        return "".join(f"\\{byte:02x}" for byte in raw)
