"""
Immutable collections of entities returned by lookups.
"""

from collections.abc import Callable, Iterable, Iterator
from typing import TYPE_CHECKING, Any, overload

if TYPE_CHECKING:
    from .entities import Entity


class ResultSet:
    """
    An ordered, immutable sequence of :class:`~ldapadx.entities.Entity`
    objects.

    Every method that narrows or combines result sets returns a new one.
    """

    def __init__(self, entities: Iterable["Entity"] = ()) -> None:
        """
        Args:
            entities: the entities, in the order the server returned them

        """
        self._entities: tuple[Entity, ...] = tuple(entities)

    def first(self) -> "Entity | None":
        """Return the first entity, or ``None`` if there are none."""
        return self._entities[0] if self._entities else None

    def each(self, callback: Callable[["Entity"], Any]) -> "ResultSet":
        """Call ``callback`` with every entity in order, returning ``self``."""
        for entity in self._entities:
            callback(entity)
        return self

    def filter(self, callback: Callable[["Entity"], bool]) -> "ResultSet":
        """Return a new result set of the entities ``callback`` accepts."""
        return ResultSet(entity for entity in self._entities if callback(entity))

    def unique(self, attribute: str) -> list[Any]:
        """
        Return the distinct values of ``attribute`` across all entities, in
        the order they are first seen.

        Args:
            attribute: the attribute name

        Returns:
            A list of values; strings are compared case-insensitively.

        """
        seen: set[Any] = set()
        values: list[Any] = []
        for entity in self._entities:
            for value in entity.get(attribute).value():
                key = value.lower() if isinstance(value, str) else value
                if key in seen:
                    continue
                seen.add(key)
                values.append(value)
        return values

    def merge(self, other: "ResultSet") -> "ResultSet":
        """Return a new result set with the entities of ``other`` appended."""
        return ResultSet(self._entities + tuple(other))

    def to_list(self) -> list["Entity"]:
        return list(self._entities)

    def __iter__(self) -> Iterator["Entity"]:
        return iter(self._entities)

    def __len__(self) -> int:
        return len(self._entities)

    @overload
    def __getitem__(self, key: int) -> "Entity": ...

    @overload
    def __getitem__(self, key: slice) -> "ResultSet": ...

    def __getitem__(self, key):
        if isinstance(key, slice):
            return ResultSet(self._entities[key])
        return self._entities[key]

    def __repr__(self) -> str:
        return f"<ResultSet: {len(self._entities)} entities>"
