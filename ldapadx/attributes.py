"""
A single multi-valued attribute of a directory entry.
"""

import logging
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, Any

from .converters import ValueConverter
from .enums import Syntax
from .exceptions import AttributeFull, ReadOnlyAttribute
from .schema import SchemaRecord

if TYPE_CHECKING:
    from .entities import Entity

logger = logging.getLogger(__name__)


def as_list(values: Any) -> list[Any]:
    """
    Return ``values`` as a list, treating strings, bytes, entities and
    non-iterables as a single value.
    """
    if values is None:
        return []
    if (
        isinstance(values, (str, bytes))
        or not isinstance(values, Iterable)
        or hasattr(values, "dn")
    ):
        return [values]
    return list(values)


def _compare_key(value: Any) -> str:
    # Entities compare by DN; everything else by its lowercased string form
    dn = getattr(value, "dn", None)
    if dn is not None and not isinstance(value, (str, bytes)):
        return dn.lower()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace").lower()
    return str(value).lower()


class Attribute:
    """
    An ordered list of native values for one attribute, bound to the
    :class:`~ldapadx.entities.Entity` that owns it.

    Values given to the constructor are taken as what the server holds and
    do not make the attribute dirty; every later change does, and tells the
    owning entity so it can build a minimal write payload.

    Args:
        name: the attribute name; stored lowercased

    Keyword Args:
        values: initial native values
        entity: the owning entity, told about every change
        converter: the converter to use for wire data; a default one if not
            given

    """

    def __init__(
        self,
        name: str,
        values: Iterable[Any] | None = None,
        entity: "Entity | None" = None,
        converter: ValueConverter | None = None,
    ) -> None:
        self.name = name.lower()
        self.converter = converter if converter is not None else ValueConverter()
        self.record: SchemaRecord | None = self.converter.catalog.get(self.name)
        self._values: list[Any] = as_list(values)
        self._entity = entity
        self.is_dirty = False

    @classmethod
    def from_wire(
        cls,
        name: str,
        values: Iterable[bytes],
        entity: "Entity | None" = None,
        converter: ValueConverter | None = None,
    ) -> "Attribute":
        """
        Build an attribute from the ``bytes`` values python-ldap returned.
        """
        attribute = cls(name, entity=entity, converter=converter)
        attribute._values = attribute.converter.to_native(
            attribute.name, values, record=attribute.record
        )
        return attribute

    # Schema facts

    @property
    def syntax(self) -> Syntax | None:
        return self.record.syntax if self.record else None

    @property
    def is_single_valued(self) -> bool:
        return bool(self.record and self.record.is_single_valued)

    @property
    def is_constructed(self) -> bool:
        return bool(self.record and self.record.is_constructed)

    # Reading

    def value(self, index: int | None = None) -> Any:
        """
        Return all values as a list, or the value at ``index``.

        Negative indexes count from the end.  An index past either end gives
        ``None``.
        """
        if index is None:
            return list(self._values)
        try:
            return self._values[index]
        except IndexError:
            return None

    def wire_data(self) -> list[bytes]:
        """
        Return the current values converted for sending to the server.
        """
        return self.converter.to_wire(self.name, self._values, record=self.record)

    # Changing

    def _check_mutable(self) -> None:
        self.converter.catalog.require(self.name)
        if self.is_constructed:
            msg = f'"{self.name}" is constructed by the server and cannot be changed'
            raise ReadOnlyAttribute(msg, attribute=self.name)

    def _prepare(self, current: list[Any], values: Any) -> list[Any]:
        """
        Return the values of ``values`` that would be appended to ``current``,
        after deduplication, validating cardinality and convertibility.
        """
        new = as_list(values)
        if self.syntax == Syntax.DN_REFERENCE:
            seen = {_compare_key(value) for value in current}
            deduplicated = []
            for value in new:
                key = _compare_key(value)
                if key in seen:
                    continue
                seen.add(key)
                deduplicated.append(value)
            new = deduplicated
        if self.is_single_valued and len(current) + len(new) > 1:
            msg = f'"{self.name}" is single-valued and cannot hold more than one value'
            raise AttributeFull(msg, attribute=self.name)
        # Surface conversion problems now rather than at write time
        self.converter.to_wire(self.name, new, record=self.record)
        return new

    def _changed(self) -> None:
        logger.debug("ldapadx.attribute.changed name=%s", self.name)
        self.is_dirty = True
        if self._entity is not None:
            self._entity._register_change(self.name)

    def add(self, values: Any) -> "Attribute":
        """
        Append one value or an iterable of values.

        For DN references, values already present (compared
        case-insensitively) are skipped.

        Raises:
            ReadOnlyAttribute: the attribute is constructed
            AttributeFull: the attribute is single-valued and would hold
                more than one value
            ConversionFailure: a value cannot be converted to wire form

        """
        self._check_mutable()
        new = self._prepare(self._values, values)
        if new:
            self._values.extend(new)
            self._changed()
        return self

    def set(self, values: Any) -> "Attribute":
        """
        Replace all values.  Nothing changes if the new values are rejected.
        """
        self._check_mutable()
        self._values = self._prepare([], values)
        self._changed()
        return self

    def clear(self) -> "Attribute":
        """
        Remove every value.
        """
        self._check_mutable()
        self._values = []
        self._changed()
        return self

    def remove(self, value_or_index: Any) -> "Attribute":
        """
        Remove the value at an index, or every value equal to the given one
        (compared as case-insensitive strings).  Removing something that is
        not there does nothing.
        """
        self._check_mutable()
        if isinstance(value_or_index, int) and not isinstance(value_or_index, bool):
            try:
                del self._values[value_or_index]
            except IndexError:
                return self
            self._changed()
            return self
        key = _compare_key(value_or_index)
        kept = [value for value in self._values if _compare_key(value) != key]
        if len(kept) != len(self._values):
            self._values = kept
            self._changed()
        return self

    def _replace(self, values: Iterable[Any]) -> None:
        # Swap values without counting it as a change: used when references
        # are resolved to the entities they point at.
        self._values = list(values)

    def mark_clean(self) -> None:
        self.is_dirty = False

    def __call__(self, index: int | None = None) -> Any:
        return self.value(index)

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._values))

    def __getitem__(self, index: int) -> Any:
        return self._values[index]

    def __contains__(self, value: Any) -> bool:
        key = _compare_key(value)
        return any(_compare_key(v) == key for v in self._values)

    def __repr__(self) -> str:
        return f"<Attribute {self.name}={self._values!r}>"
