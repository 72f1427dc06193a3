"""
Directory entries as collections of schema-aware attributes that remember
what changed, so that only the changes are written back.
"""

import base64
import datetime
import logging
import re
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, Any, cast

from ldap import modlist
from ldap.dn import dn2str, escape_dn_chars, str2dn

from ldapadx import ldap

from .attributes import Attribute
from .converters import ValueConverter
from .enums import Operation, Syntax
from .exceptions import AmbiguousResult, InvalidInput, NoSuchObject
from .results import ResultSet
from .typing import AddModList, ModifyModList, PersistedEntity, WireEntry

if TYPE_CHECKING:
    from .connection import DirectoryConnection

logger = logging.getLogger(__name__)

#: ``member;range=0-1499`` and friends
RANGED_ATTRIBUTE_RE = re.compile(r"^(?P<name>[^;]+);range=\d+-(?:\d+|\*)$", re.IGNORECASE)

#: The RDN attribute when the schema does not say
DEFAULT_RDN_ATTRIBUTE = "cn"


def looks_like_dn(value: str) -> bool:
    """
    Return ``True`` if ``value`` is a distinguished name rather than a filter.

    The empty string counts as a DN: the rootDSE.
    """
    if value == "":
        return True
    return (
        not value.startswith("(")
        and not value.endswith(")")
        and "dc=" in value.lower()
    )


def _persist_value(value: Any) -> Any:
    if isinstance(value, datetime.datetime):
        return {"datetime": value.isoformat()}
    if isinstance(value, bytes):
        return {"bytes": base64.b64encode(value).decode("ascii")}
    if isinstance(value, Entity):
        return value.dn
    return value


def _restore_value(value: Any) -> Any:
    if isinstance(value, dict):
        if "datetime" in value:
            return datetime.datetime.fromisoformat(value["datetime"])
        if "bytes" in value:
            return base64.b64decode(value["bytes"])
    return value


class Modlist:
    """
    Builds python-ldap modlists from the changed attributes of an entity.

    Args:
        entity: the entity whose changes to send

    """

    def __init__(self, entity: "Entity") -> None:
        self.entity = entity

    def _get_modlist(self, data: dict[str, list[bytes] | None]) -> ModifyModList:
        """
        Build a modlist for ``modify_s``.

        Every entry is a ``MOD_REPLACE``: an attribute with no values is
        replaced with ``None``, which deletes it without failing if the
        server does not have it.
        """
        return [(ldap.MOD_REPLACE, key, value or None) for key, value in data.items()]

    def add(self) -> AddModList:
        """
        Return the modlist for ``add_s``, leaving out empty attributes.
        """
        data = self.entity.changed_data()
        return modlist.addModlist({key: value for key, value in data.items() if value})

    def update(self) -> ModifyModList:
        """
        Return the modlist for ``modify_s``: replacements first, then deletions.
        """
        data = self.entity.changed_data()
        replacements = {key: value for key, value in data.items() if value}
        deletes = {key: None for key, value in data.items() if not value}
        return self._get_modlist(replacements) + self._get_modlist(deletes)


class Entity:
    """
    One directory entry.

    Attributes are reached with :meth:`get` or as Python attributes:
    ``entity.get("sAMAccountName")`` and ``entity.samaccountname`` return the
    same :class:`~ldapadx.attributes.Attribute`.  Asking for an attribute the
    entity does not have gives an empty one, so
    ``entity.description.set("x")`` works on any entity.

    An entity with no DN is new: :meth:`create` stores it.  Every other write
    needs a DN.  Entities built from attribute data given here (rather than
    read from the server) count all of that data as changed, and it is
    checked the same way as :meth:`Attribute.set <ldapadx.attributes.Attribute.set>`.

    Keyword Args:
        attributes: attribute name to native value or list of values
        dn: the distinguished name, if the entry exists on the server
        connection: the connection used for reads and writes
        converter: the value converter; a default one if not given

    """

    def __init__(
        self,
        attributes: dict[str, Any] | None = None,
        dn: str | None = None,
        connection: "DirectoryConnection | None" = None,
        converter: ValueConverter | None = None,
    ) -> None:
        self._dn = dn
        self._connection = connection
        self._converter = converter if converter is not None else ValueConverter()
        self._attributes: dict[str, Attribute] = {}
        self._changed: dict[str, None] = {}
        self._released = False
        for name, values in (attributes or {}).items():
            self.get(name).set(values)

    @classmethod
    def from_wire(
        cls,
        entry: WireEntry,
        connection: "DirectoryConnection | None" = None,
        converter: ValueConverter | None = None,
    ) -> "Entity":
        """
        Wrap a ``(dn, attributes)`` tuple returned by python-ldap.

        Ranged attributes (``member;range=0-1499``) are merged into one
        attribute under their plain name.
        """
        dn, data = entry
        entity = cls(dn=dn, connection=connection, converter=converter)
        merged: dict[str, list[bytes]] = {}
        for key, values in data.items():
            name = key.lower()
            if match := RANGED_ATTRIBUTE_RE.match(name):
                name = match.group("name")
            merged.setdefault(name, []).extend(values)
        for name, values in merged.items():
            entity._attributes[name] = Attribute.from_wire(
                name, values, entity=entity, converter=entity._converter
            )
        return entity

    @classmethod
    def read(
        cls,
        dn_or_filter: str,
        attributes: Iterable[str] | None,
        connection: "DirectoryConnection",
        converter: ValueConverter | None = None,
    ) -> "Entity | None":
        """
        Read one entry, by DN or by a filter that must match at most one
        entry.

        Args:
            dn_or_filter: a DN (``""`` for the rootDSE) or a search filter
            attributes: attribute names to read; ``None`` or empty for all
            connection: the connection to read with

        Raises:
            InvalidInput: ``dn_or_filter`` is not a string
            AmbiguousResult: the filter matched more than one entry
            ReferralBudgetExceeded: we gave up following referrals

        Returns:
            The entity, or ``None`` if nothing matched.

        """
        from .tasks import SearchTask  # noqa: PLC0415

        if not isinstance(dn_or_filter, str):
            msg = f"Expected a DN or a filter string, not {dn_or_filter!r}"
            raise InvalidInput(msg)
        if looks_like_dn(dn_or_filter):
            task = SearchTask(Operation.READ, connection, converter=converter)
            task.set_base(dn_or_filter)
            try:
                result = task.set_attributes(attributes).run_or_raise()
            except NoSuchObject:
                return None
        else:
            task = SearchTask(Operation.SEARCH, connection, converter=converter)
            task.set_filter(dn_or_filter)
            result = task.set_attributes(attributes).run_or_raise()
            if len(result) > 1:
                msg = f'"{dn_or_filter}" matched {len(result)} entries, expected one'
                raise AmbiguousResult(msg)
        return result.first()

    # Identity

    @property
    def dn(self) -> str | None:
        return self._dn

    @property
    def connection(self) -> "DirectoryConnection | None":
        return self._connection

    @property
    def is_new(self) -> bool:
        return self._dn is None

    @property
    def rdn_attribute(self) -> str:
        """
        The naming attribute, from the schema of the entry's most specific
        object class; ``cn`` if the schema does not say.
        """
        classes = self._attributes.get("objectclass")
        if classes is not None and len(classes):
            record = self._converter.catalog.get(str(classes.value(-1)))
            if record is not None and record.rdn_attribute:
                return record.rdn_attribute
        return DEFAULT_RDN_ATTRIBUTE

    def parent(self) -> str | None:
        """Return the DN of the container holding this entry."""
        if not self._dn:
            return None
        return dn2str(str2dn(self._dn)[1:])

    # Attribute access

    def _ensure_live(self) -> None:
        if self._released:
            msg = "This entity has been deleted and cannot be used"
            raise InvalidInput(msg)

    def get(self, name: str) -> Attribute:
        """
        Return the attribute ``name``, creating an empty one if the entity
        does not have it.
        """
        self._ensure_live()
        key = name.lower()
        if key not in self._attributes:
            self._attributes[key] = Attribute(key, entity=self, converter=self._converter)
        return self._attributes[key]

    def set(self, name: str, values: Any) -> "Entity":
        """Replace the values of ``name``."""
        self.get(name).set(values)
        return self

    def remove(self, *names: str) -> "Entity":
        """Clear every value of each named attribute."""
        for name in names:
            self.get(name).clear()
        return self

    def bit_state(self, name: str, bit: int, new_state: bool | None = None) -> "bool | Entity":
        """
        Read or change one bit of an integer bitfield such as
        ``userAccountControl``::

            if not user.bit_state("userAccountControl", UserAccountControl.ACCOUNTDISABLE):
                user.bit_state("userAccountControl", UserAccountControl.ACCOUNTDISABLE, True)

        Load the attribute from the server first: a missing value counts as 0,
        so the other bits would be lost.

        Args:
            name: the attribute holding the bitfield
            bit: the bit (or bits) to test or change

        Keyword Args:
            new_state: if given, set the bit when truthy and clear it otherwise

        Returns:
            The bit's state when ``new_state`` is ``None``, else this entity.

        """
        current = int(self.get(name).value(0) or 0)
        if new_state is None:
            return bool(current & bit)
        value = current | bit if new_state else current & ~bit
        return self.set(name, int(value))

    def all_attributes(self) -> dict[str, list[Any]]:
        """Return every attribute that has values, as name to native values."""
        return {name: attr.value() for name, attr in self._attributes.items() if len(attr)}

    def __getattr__(self, name: str) -> Attribute:
        if name.startswith("_"):
            raise AttributeError(name)
        return self.get(name)

    def __getitem__(self, name: str) -> Attribute:
        return self.get(name)

    def __contains__(self, name: str) -> bool:
        attribute = self._attributes.get(name.lower())
        return attribute is not None and len(attribute) > 0

    def __iter__(self) -> Iterator[str]:
        return iter([name for name, attr in self._attributes.items() if len(attr)])

    def __repr__(self) -> str:
        return f"<Entity {self._dn or '(new)'}>"

    # Change tracking

    def _register_change(self, name: str) -> None:
        self._changed[name.lower()] = None

    @property
    def changed(self) -> list[str]:
        """Names of the attributes changed since the entity was read or saved."""
        return list(self._changed)

    def changed_data(self) -> dict[str, list[bytes]]:
        """
        Return the wire values of every changed attribute: the write payload.
        """
        return {name: self._attributes[name].wire_data() for name in self._changed}

    def _mark_clean(self) -> None:
        for name in self._changed:
            self._attributes[name].mark_clean()
        self._changed = {}

    def _require_connection(self, connection: "DirectoryConnection | None") -> "DirectoryConnection":
        connection = connection if connection is not None else self._connection
        if connection is None:
            msg = "No connection: pass one or read the entity from the server"
            raise InvalidInput(msg)
        self._connection = connection
        return connection

    def _require_dn(self, operation: str) -> str:
        self._ensure_live()
        if not self._dn:
            msg = f"Cannot {operation} an entity that has not been created"
            raise InvalidInput(msg)
        return self._dn

    # References

    def resolve(self, name: str, attributes: Iterable[str] | None = None) -> ResultSet:
        """
        Replace the DNs held by the reference attribute ``name`` with the
        entities they point at, and return those entities.

        Referenced entries that no longer exist keep their DN.

        Args:
            name: a DN reference attribute, e.g. ``member``

        Keyword Args:
            attributes: attribute names to read for each referenced entry

        Raises:
            InvalidInput: ``name`` is not a DN reference attribute

        """
        attribute = self.get(name)
        if attribute.syntax != Syntax.DN_REFERENCE:
            msg = f'"{attribute.name}" does not hold references to other entries'
            raise InvalidInput(msg)
        connection = self._require_connection(None)
        attributes = list(attributes) if attributes is not None else None
        values: list[Any] = []
        found: list[Entity] = []
        for value in attribute:
            if isinstance(value, Entity):
                values.append(value)
                found.append(value)
                continue
            entity = self.read(value, attributes, connection, converter=self._converter)
            if entity is None:
                values.append(value)
            else:
                values.append(entity)
                found.append(entity)
        attribute._replace(values)
        return ResultSet(found)

    # Writes

    def create(self, parent_dn: str, connection: "DirectoryConnection | None" = None) -> "Entity":
        """
        Store this new entity under ``parent_dn``.

        Raises:
            InvalidInput: the entity already has a DN, or its RDN attribute
                has not been set

        """
        self._ensure_live()
        if self._dn:
            msg = f"{self._dn} already exists; use update()"
            raise InvalidInput(msg)
        connection = self._require_connection(connection)
        rdn = self.rdn_attribute
        rdn_value = self.get(rdn).value(0) if rdn in self._changed else None
        if rdn_value is None:
            msg = f'Set "{rdn}" before creating this entity'
            raise InvalidInput(msg)
        dn = f"{rdn}={escape_dn_chars(str(rdn_value))},{parent_dn}"
        _modlist = Modlist(self).add()
        connection.add(dn, _modlist)
        self._dn = dn
        self._mark_clean()
        return self

    def update(self, connection: "DirectoryConnection | None" = None) -> "Entity":
        """
        Send the changed attributes to the server; does nothing if nothing
        changed.
        """
        dn = self._require_dn("update")
        if not self._changed:
            logger.debug("ldapadx.entity.update.no-changes dn=%s", dn)
            return self
        connection = self._require_connection(connection)
        connection.modify(dn, Modlist(self).update())
        self._mark_clean()
        return self

    def delete(self, connection: "DirectoryConnection | None" = None) -> None:
        """
        Delete the entry from the server.  The entity cannot be used afterwards.
        """
        dn = self._require_dn("delete")
        connection = self._require_connection(connection)
        connection.delete(dn)
        self._attributes = {}
        self._changed = {}
        self._dn = None
        self._released = True

    def move(self, new_parent_dn: str, connection: "DirectoryConnection | None" = None) -> "Entity":
        """
        Move the entry under ``new_parent_dn``, keeping its RDN.

        Raises:
            InvalidInput: the entity has no DN, or the value of its RDN
                attribute is not known

        """
        dn = self._require_dn("move")
        rdn = self.rdn_attribute
        rdn_value = self.get(rdn).value(0)
        if rdn_value is None:
            msg = f'The value of "{rdn}" is needed to move {dn}; read it first'
            raise InvalidInput(msg)
        connection = self._require_connection(connection)
        newrdn = f"{rdn}={escape_dn_chars(str(rdn_value))}"
        connection.rename(dn, newrdn, new_parent_dn, delete_old_rdn=True)
        self._dn = f"{newrdn},{new_parent_dn}"
        return self

    # Persistence

    def to_persistable(self) -> PersistedEntity:
        """
        Return a JSON-serializable dict of the DN, the attribute values and
        the names of changed attributes.  The connection is not included.
        """
        self._ensure_live()
        return {
            "dn": self._dn,
            "attributes": {
                name: [_persist_value(value) for value in attr.value()]
                for name, attr in self._attributes.items()
                if len(attr) or name in self._changed
            },
            "changed": list(self._changed),
        }

    @classmethod
    def from_persistable(
        cls,
        data: PersistedEntity,
        connection: "DirectoryConnection | None" = None,
        converter: ValueConverter | None = None,
    ) -> "Entity":
        """
        Rebuild an entity from :meth:`to_persistable` output.

        Args:
            data: the persisted dict
            connection: a live connection for the restored entity

        Raises:
            InvalidInput: ``data`` is not a persisted entity

        """
        try:
            dn = data["dn"]
            attributes = cast("dict[str, list[Any]]", data["attributes"])
            changed = data.get("changed", [])
        except (KeyError, TypeError) as e:
            msg = "Not a persisted entity"
            raise InvalidInput(msg) from e
        entity = cls(dn=dn, connection=connection, converter=converter)
        for name, values in attributes.items():
            if name in changed:
                continue
            # As read from the server, which may include constructed attributes
            attribute = Attribute(
                name,
                [_restore_value(value) for value in values],
                entity=entity,
                converter=entity._converter,
            )
            entity._attributes[attribute.name] = attribute
        for name in changed:
            values = attributes.get(name, [])
            entity.get(name).set([_restore_value(value) for value in values])
        return entity
