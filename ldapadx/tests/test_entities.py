"""
Tests for Entity and its change tracking.
"""

import datetime
import json
import unittest

import pytz
from ldap import MOD_REPLACE

from ldapadx.entities import Entity, Modlist, looks_like_dn
from ldapadx.enums import Operation, UserAccountControl
from ldapadx.exceptions import (
    AmbiguousResult,
    AttributeFull,
    ConversionFailure,
    InsufficientAccess,
    InvalidInput,
    NoSuchObject,
    NotPersisted,
    ReadOnlyAttribute,
    ReferralBudgetExceeded,
    UnknownAttribute,
)
from ldapadx.results import ResultSet

from .helpers import BASE_DN, ScriptedConnection, SchemaFixtureMixin, entry, page, referral

ALICE = f"CN=Alice,OU=People,{BASE_DN}"
BOB = f"CN=Bob,OU=People,{BASE_DN}"
GROUP = f"CN=Staff,OU=Groups,{BASE_DN}"


class EntityTestCase(SchemaFixtureMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.connection = ScriptedConnection()

    def wire_entity(self, dn=ALICE, **attributes):
        attributes.setdefault("objectClass", ["top", "person", "user"])
        return Entity.from_wire(
            entry(dn, **attributes), connection=self.connection, converter=self.converter
        )


class TestLooksLikeDn(unittest.TestCase):
    def test_dns(self):
        self.assertTrue(looks_like_dn(""))
        self.assertTrue(looks_like_dn(ALICE))
        self.assertTrue(looks_like_dn("dc=example,dc=com"))

    def test_filters(self):
        self.assertFalse(looks_like_dn("(objectClass=*)"))
        self.assertFalse(looks_like_dn("(distinguishedName=CN=x,DC=example,DC=com)"))
        self.assertFalse(looks_like_dn("samaccountname=alice"))


class TestEntityAttributes(EntityTestCase):
    def test_from_wire_is_clean(self):
        entity = self.wire_entity(cn="Alice", mail="alice@example.com")
        self.assertEqual(entity.dn, ALICE)
        self.assertEqual(entity.changed, [])
        self.assertEqual(entity.get("CN").value(0), "Alice")
        self.assertFalse(entity.get("mail").is_dirty)

    def test_attribute_style_access(self):
        entity = self.wire_entity(cn="Alice")
        self.assertIs(entity.cn, entity.get("cn"))
        self.assertIs(entity["CN"], entity.get("cn"))

    def test_missing_attribute_is_empty(self):
        entity = self.wire_entity(cn="Alice")
        self.assertEqual(entity.description.value(), [])
        self.assertNotIn("description", entity)
        self.assertEqual(entity.changed, [])

    def test_fluent_set_on_missing_attribute(self):
        entity = self.wire_entity(cn="Alice")
        entity.description.set("Engineer")
        self.assertIn("description", entity)
        self.assertEqual(entity.changed, ["description"])

    def test_dirty_set_minimality(self):
        entity = self.wire_entity(cn="Alice", mail="alice@example.com", description="old")
        entity.description.set("new")
        self.assertEqual(entity.changed, ["description"])
        self.assertEqual(entity.changed_data(), {"description": [b"new"]})

    def test_new_entity_counts_everything_as_changed(self):
        entity = Entity({"cn": "Carol", "description": ["a", "b"]}, converter=self.converter)
        self.assertTrue(entity.is_new)
        self.assertEqual(sorted(entity.changed), ["cn", "description"])

    def test_new_entity_values_are_validated(self):
        with self.assertRaises(AttributeFull):
            Entity({"mail": ["a@example.com", "b@example.com"]}, converter=self.converter)
        with self.assertRaises(ReadOnlyAttribute):
            Entity({"cn": "Carol", "canonicalName": "example.com/Carol"}, converter=self.converter)
        with self.assertRaises(ConversionFailure):
            Entity({"userAccountControl": "lots"}, converter=self.converter)

    def test_new_entity_cannot_reference_unsaved_entity(self):
        boss = Entity({"cn": "Boss"}, converter=self.converter)
        with self.assertRaises(NotPersisted):
            Entity({"cn": "Carol", "manager": boss}, converter=self.converter)

    def test_bit_state_reads_bits(self):
        entity = self.wire_entity(userAccountControl="514")
        disabled = entity.bit_state("userAccountControl", UserAccountControl.ACCOUNTDISABLE)
        self.assertIs(disabled, True)
        self.assertIs(entity.bit_state("userAccountControl", UserAccountControl.LOCKOUT), False)
        self.assertEqual(entity.changed, [])

    def test_bit_state_sets_and_clears_bits(self):
        entity = self.wire_entity(userAccountControl="512")
        returned = entity.bit_state("userAccountControl", UserAccountControl.ACCOUNTDISABLE, True)
        self.assertIs(returned, entity)
        self.assertEqual(entity.useraccountcontrol.value(0), 514)
        self.assertEqual(entity.changed_data(), {"useraccountcontrol": [b"514"]})
        entity.bit_state("userAccountControl", UserAccountControl.ACCOUNTDISABLE, False)
        self.assertEqual(entity.useraccountcontrol.value(0), 512)

    def test_bit_state_on_missing_attribute(self):
        entity = self.wire_entity(cn="Alice")
        disabled = entity.bit_state("userAccountControl", UserAccountControl.ACCOUNTDISABLE)
        self.assertIs(disabled, False)
        entity.bit_state("userAccountControl", UserAccountControl.NORMAL_ACCOUNT, True)
        self.assertEqual(entity.useraccountcontrol.value(0), 512)

    def test_ranged_attributes_are_merged(self):
        entity = self.wire_entity(
            GROUP,
            **{
                "member;range=0-1": [ALICE, BOB],
                "member;range=2-*": [f"CN=Carol,OU=People,{BASE_DN}"],
            },
        )
        self.assertEqual(len(entity.member), 3)
        self.assertEqual(list(entity), ["member", "objectclass"])

    def test_set_and_remove(self):
        entity = self.wire_entity(cn="Alice", description="x", mail="alice@example.com")
        entity.set("description", ["y"]).remove("mail")
        self.assertEqual(entity.description.value(), ["y"])
        self.assertEqual(entity.mail.value(), [])
        self.assertEqual(sorted(entity.changed), ["description", "mail"])

    def test_all_attributes(self):
        entity = self.wire_entity(cn="Alice")
        entity.get("description")
        self.assertEqual(
            entity.all_attributes(),
            {"objectclass": ["top", "person", "user"], "cn": ["Alice"]},
        )

    def test_rdn_attribute_from_schema(self):
        ou = self.wire_entity(f"OU=People,{BASE_DN}", objectClass=["top", "organizationalUnit"])
        self.assertEqual(ou.rdn_attribute, "ou")
        self.assertEqual(self.wire_entity().rdn_attribute, "cn")

    def test_rdn_attribute_defaults_to_cn(self):
        self.assertEqual(Entity(converter=self.converter).rdn_attribute, "cn")
        thing = self.wire_entity(objectClass=["top", "unknownClass"])
        self.assertEqual(thing.rdn_attribute, "cn")

    def test_parent(self):
        self.assertEqual(self.wire_entity().parent(), f"OU=People,{BASE_DN}")
        self.assertIsNone(Entity(converter=self.converter).parent())


class TestEntityRead(EntityTestCase):
    def test_read_by_dn(self):
        self.connection.responses = [page(entry(ALICE, cn="Alice", objectClass="user"))]
        entity = Entity.read(ALICE, ["cn"], self.connection, converter=self.converter)
        self.assertEqual(entity.dn, ALICE)
        self.assertEqual(entity.cn.value(0), "Alice")
        call = self.connection.calls[0]
        self.assertEqual(call["operation"], Operation.READ)
        self.assertEqual(call["base"], ALICE)
        self.assertEqual(call["attributes"], ["cn", "objectclass"])

    def test_read_root_dse(self):
        self.connection.responses = [page(entry("", dnsHostName="dc1.example.com"))]
        entity = Entity.read("", [], self.connection, converter=self.converter)
        self.assertEqual(entity.dn, "")
        self.assertEqual(self.connection.calls[0]["base"], "")
        self.assertEqual(self.connection.calls[0]["operation"], Operation.READ)

    def test_read_missing_dn(self):
        self.connection.responses = [NoSuchObject("no such object", code=32)]
        self.assertIsNone(Entity.read(ALICE, ["cn"], self.connection, converter=self.converter))

    def test_read_by_filter(self):
        self.connection.responses = [page(entry(ALICE, cn="Alice"))]
        entity = Entity.read("(sAMAccountName=alice)", ["cn"], self.connection, converter=self.converter)
        self.assertEqual(entity.dn, ALICE)
        call = self.connection.calls[0]
        self.assertEqual(call["operation"], Operation.SEARCH)
        self.assertEqual(call["base"], BASE_DN)
        self.assertEqual(call["filter"], "(sAMAccountName=alice)")

    def test_read_by_filter_no_match(self):
        self.connection.responses = [page()]
        self.assertIsNone(Entity.read("(cn=nobody)", ["cn"], self.connection, converter=self.converter))

    def test_ambiguous_filter_read(self):
        self.connection.responses = [page(entry(ALICE, cn="Alice"), entry(BOB, cn="Bob"))]
        with self.assertRaises(AmbiguousResult):
            Entity.read("(objectClass=*)", ["cn"], self.connection, converter=self.converter)

    def test_read_rejects_non_strings(self):
        with self.assertRaises(InvalidInput):
            Entity.read(42, ["cn"], self.connection)  # type: ignore[arg-type]

    def test_read_gives_up_on_referrals(self):
        self.connection.responses = [referral("ldap://dc2.example.com/" + BASE_DN)] * 10
        with self.assertRaises(ReferralBudgetExceeded):
            Entity.read("(cn=alice)", ["cn"], self.connection, converter=self.converter)


class TestEntityResolve(EntityTestCase):
    def test_resolve_promotes_references(self):
        group = self.wire_entity(GROUP, member=[ALICE, BOB])
        self.connection.responses = [
            page(entry(ALICE, cn="Alice")),
            page(entry(BOB, cn="Bob")),
        ]
        result = group.resolve("member", ["cn"])
        self.assertIsInstance(result, ResultSet)
        self.assertEqual([e.dn for e in result], [ALICE, BOB])
        members = group.member.value()
        self.assertTrue(all(isinstance(m, Entity) for m in members))
        self.assertEqual(members[1].cn.value(0), "Bob")
        self.assertEqual(group.changed, [])

    def test_resolved_references_still_write_as_dns(self):
        group = self.wire_entity(GROUP, member=[ALICE])
        self.connection.responses = [page(entry(ALICE, cn="Alice"))]
        group.resolve("member")
        self.assertEqual(group.member.wire_data(), [ALICE.encode()])

    def test_resolve_keeps_dns_of_missing_entries(self):
        group = self.wire_entity(GROUP, member=[ALICE, BOB])
        self.connection.responses = [page(entry(ALICE, cn="Alice")), page()]
        result = group.resolve("member")
        self.assertEqual(len(result), 1)
        self.assertEqual(group.member.value(1), BOB)

    def test_resolve_needs_a_reference_attribute(self):
        entity = self.wire_entity(cn="Alice")
        with self.assertRaises(InvalidInput):
            entity.resolve("cn")


class TestEntityWrites(EntityTestCase):
    def test_create(self):
        entity = Entity(
            {"objectClass": ["top", "person", "user"], "cn": "Carol", "description": []},
            connection=self.connection,
            converter=self.converter,
        )
        entity.create(f"OU=People,{BASE_DN}")
        self.assertEqual(entity.dn, f"cn=Carol,OU=People,{BASE_DN}")
        self.assertEqual(entity.changed, [])
        operation, dn, modlist = self.connection.writes[0]
        self.assertEqual(operation, "add")
        self.assertEqual(dn, f"cn=Carol,OU=People,{BASE_DN}")
        self.assertEqual(
            dict(modlist),
            {"objectclass": [b"top", b"person", b"user"], "cn": [b"Carol"]},
        )

    def test_create_escapes_the_rdn_value(self):
        entity = Entity({"cn": "Smith, John"}, connection=self.connection, converter=self.converter)
        entity.create(f"OU=People,{BASE_DN}")
        self.assertEqual(entity.dn, f"cn=Smith\\, John,OU=People,{BASE_DN}")

    def test_create_needs_the_rdn_attribute(self):
        entity = Entity({"description": "x"}, connection=self.connection, converter=self.converter)
        with self.assertRaises(InvalidInput):
            entity.create(f"OU=People,{BASE_DN}")
        self.assertEqual(self.connection.writes, [])

    def test_create_twice_fails(self):
        entity = self.wire_entity(cn="Alice")
        with self.assertRaises(InvalidInput):
            entity.create(f"OU=People,{BASE_DN}")

    def test_update_sends_only_changes(self):
        entity = self.wire_entity(cn="Alice", mail="alice@example.com", description="old")
        entity.description.set("new")
        entity.mail.clear()
        entity.update()
        self.assertEqual(
            self.connection.writes,
            [
                (
                    "modify",
                    ALICE,
                    [(MOD_REPLACE, "description", [b"new"]), (MOD_REPLACE, "mail", None)],
                )
            ],
        )
        self.assertEqual(entity.changed, [])
        self.assertFalse(entity.description.is_dirty)

    def test_update_without_changes_is_a_no_op(self):
        entity = self.wire_entity(cn="Alice")
        entity.description.set("x")
        entity.update()
        with self.assertLogs("ldapadx.entities", level="DEBUG") as logs:
            entity.update()
            entity.update()
        self.assertEqual(len(self.connection.writes), 1)
        self.assertIn("no-changes", logs.output[0])

    def test_update_needs_a_dn(self):
        entity = Entity({"cn": "Carol"}, connection=self.connection, converter=self.converter)
        with self.assertRaises(InvalidInput):
            entity.update()

    def test_failed_update_keeps_local_state(self):
        entity = self.wire_entity(cn="Alice")
        entity.description.set("x")
        self.connection.write_error = InsufficientAccess("denied", code=50)
        with self.assertRaises(InsufficientAccess):
            entity.update()
        self.assertEqual(entity.changed, ["description"])
        self.assertEqual(entity.description.value(), ["x"])

    def test_failed_create_keeps_local_state(self):
        entity = Entity({"cn": "Carol"}, connection=self.connection, converter=self.converter)
        self.connection.write_error = InsufficientAccess("denied", code=50)
        with self.assertRaises(InsufficientAccess):
            entity.create(f"OU=People,{BASE_DN}")
        self.assertIsNone(entity.dn)
        self.assertEqual(entity.changed, ["cn"])

    def test_update_needs_a_connection(self):
        entity = Entity.from_wire(entry(ALICE, cn="Alice"), converter=self.converter)
        entity.description.set("x")
        with self.assertRaises(InvalidInput):
            entity.update()
        entity.update(connection=self.connection)
        self.assertEqual(len(self.connection.writes), 1)

    def test_delete(self):
        entity = self.wire_entity(cn="Alice")
        entity.delete()
        self.assertEqual(self.connection.writes, [("delete", ALICE)])
        self.assertIsNone(entity.dn)
        with self.assertRaises(InvalidInput):
            entity.get("cn")
        with self.assertRaises(InvalidInput):
            entity.delete()

    def test_move(self):
        entity = self.wire_entity(cn="Alice")
        entity.move(f"OU=Former,{BASE_DN}")
        self.assertEqual(
            self.connection.writes,
            [("rename", ALICE, "cn=Alice", f"OU=Former,{BASE_DN}", True)],
        )
        self.assertEqual(entity.dn, f"cn=Alice,OU=Former,{BASE_DN}")
        self.assertEqual(entity.parent(), f"OU=Former,{BASE_DN}")

    def test_move_needs_the_rdn_value(self):
        entity = self.wire_entity(mail="alice@example.com")
        with self.assertRaises(InvalidInput):
            entity.move(f"OU=Former,{BASE_DN}")
        self.assertEqual(self.connection.writes, [])


class TestModlist(EntityTestCase):
    def test_add_leaves_out_empty_attributes(self):
        entity = Entity({"cn": "x", "description": []}, converter=self.converter)
        self.assertEqual(dict(Modlist(entity).add()), {"cn": [b"x"]})

    def test_update_replaces_then_deletes(self):
        entity = self.wire_entity(cn="Alice", description="a")
        entity.description.clear()
        entity.mail.set("alice@example.com")
        self.assertEqual(
            Modlist(entity).update(),
            [(MOD_REPLACE, "mail", [b"alice@example.com"]), (MOD_REPLACE, "description", None)],
        )


class TestEntityPersistence(EntityTestCase):
    def test_round_trip(self):
        entity = self.wire_entity(
            cn="Alice",
            whenChanged="20240101120000.0Z",
            thumbnailPhoto=[b"\x00\x01"],
            unknownBlob=[b"\xff\xfe"],
        )
        entity.description.set("edited")
        data = json.loads(json.dumps(entity.to_persistable()))
        restored = Entity.from_persistable(data, self.connection, converter=self.converter)
        self.assertEqual(restored.dn, ALICE)
        self.assertIs(restored.connection, self.connection)
        self.assertEqual(restored.changed, ["description"])
        self.assertTrue(restored.description.is_dirty)
        self.assertFalse(restored.cn.is_dirty)
        self.assertEqual(
            restored.whenchanged.value(0),
            datetime.datetime(2024, 1, 1, 12, 0, tzinfo=pytz.utc),
        )
        self.assertEqual(restored.thumbnailphoto.value(), entity.thumbnailphoto.value())
        self.assertEqual(restored.unknownblob.value(), [b"\xff\xfe"])
        self.assertEqual(restored.changed_data(), entity.changed_data())

    def test_round_trip_of_cleared_attribute(self):
        entity = self.wire_entity(cn="Alice", description="a")
        entity.description.clear()
        restored = Entity.from_persistable(entity.to_persistable(), self.connection, converter=self.converter)
        self.assertEqual(restored.changed_data(), {"description": []})

    def test_resolved_references_persist_as_dns(self):
        group = self.wire_entity(GROUP, member=[ALICE])
        self.connection.responses = [page(entry(ALICE, cn="Alice"))]
        group.resolve("member")
        self.assertEqual(group.to_persistable()["attributes"]["member"], [ALICE])

    def test_bad_data(self):
        with self.assertRaises(InvalidInput):
            Entity.from_persistable({"nope": 1}, self.connection)

    def test_changed_attributes_are_validated_on_restore(self):
        data = {
            "dn": ALICE,
            "attributes": {"mail": ["a@example.com", "b@example.com"]},
            "changed": ["mail"],
        }
        with self.assertRaises(AttributeFull):
            Entity.from_persistable(data, self.connection, converter=self.converter)

    def test_constructed_attributes_restore_as_read(self):
        entity = self.wire_entity(cn="Alice", canonicalName="example.com/People/Alice")
        entity.cn.set("Alicia")
        restored = Entity.from_persistable(
            entity.to_persistable(), self.connection, converter=self.converter
        )
        self.assertEqual(restored.canonicalname.value(0), "example.com/People/Alice")
        self.assertEqual(restored.changed, ["cn"])


class TestEntityStrictSchema(EntityTestCase):
    strict_schema = True

    def test_unknown_attribute_rejected_on_construction(self):
        with self.assertRaises(UnknownAttribute):
            Entity({"cn": "Carol", "extensionAttribute1": "x"}, converter=self.converter)

    def test_unknown_attribute_from_server_is_kept(self):
        entity = self.wire_entity(cn="Alice", extensionAttribute1="x")
        self.assertEqual(entity.extensionattribute1.value(0), "x")
