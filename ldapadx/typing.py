"""
ldapadx type definitions.

Type aliases for the python-ldap data structures passed between the
connection, task and entity layers.
"""

from typing import Any

WireValues = list[bytes]
WireAttributes = dict[str, list[bytes]]
WireEntry = tuple[str, WireAttributes]
ModifyModListEntry = tuple[int, str, list[bytes] | None]
ModifyModList = list[ModifyModListEntry]
AddModList = list[tuple[str, list[bytes]]]
PersistedEntity = dict[str, Any]
