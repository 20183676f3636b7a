"""Unit tests for roster_etl.family_materialize."""

from __future__ import annotations

from collections import Counter

from crm_payloads import agent, make_record

from roster_etl.client_index import ClientIndex, collect_seeds
from roster_etl.extract import decode_record, extract
from roster_etl.family_cluster import cluster_records
from roster_etl.family_materialize import FamilyMaterializer, family_name_for


def _materialize(store, org_id, counters, *raws, default_branch="Main"):
    contacts = [extract(decode_record(r, "student")) for r in raws]
    index = ClientIndex(store, org_id, counters)
    index.build(collect_seeds(contacts))
    result = cluster_records(contacts)
    record_group = FamilyMaterializer(store, org_id, counters, default_branch).materialize(
        result, contacts, index
    )
    return contacts, index, result, record_group


def _primaries_per_group(store):
    return Counter(
        m["family_group_id"] for m in store.rows("family_members") if m["is_primary_contact"]
    )


class TestFamilyName:
    def test_named_after_naming_agent(self, store, org_id, counters):
        contacts, _, result, _ = _materialize(
            store, org_id, counters,
            make_record(1, first="Ann", agents=[agent("Мария", last="Иванова", mobile="89161112233")]),
        )
        assert family_name_for(result.clusters[0], contacts) == "Family Иванова Мария"

    def test_singleton_named_after_record(self, store, org_id, counters):
        contacts, _, result, _ = _materialize(
            store, org_id, counters, make_record(1, first="Solo", mobile="89160001122"),
        )
        assert family_name_for(result.clusters[0], contacts) == "Family Solo"

    def test_unknown_when_nobody_has_a_name(self, store, org_id, counters):
        contacts, _, result, _ = _materialize(
            store, org_id, counters, make_record(1, mobile="89160001122"),
        )
        assert family_name_for(result.clusters[0], contacts) == "Family Unknown"

    def test_nameless_clusters_share_one_group(self, store, org_id, counters):
        _, _, result, record_group = _materialize(
            store, org_id, counters,
            make_record(1, mobile="89160001122"),
            make_record(2, agents=[agent("", mobile="89160003344")]),
        )
        assert len(result.clusters) == 2
        groups = store.rows("family_groups")
        assert [g["name"] for g in groups] == ["Family Unknown"]
        assert record_group == {0: groups[0]["id"], 1: groups[0]["id"]}
        assert _primaries_per_group(store) == {groups[0]["id"]: 1}


class TestMaterialize:
    def test_cluster_members_and_roles(self, store, org_id, counters):
        _, index, _, record_group = _materialize(
            store, org_id, counters,
            make_record(1, first="Ann", mobile="89160000011",
                        agents=[agent("Mom", mobile="89161112233"), agent("Dad", mobile="89162223344")]),
            make_record(2, first="Ben", mobile="89160000022",
                        agents=[agent("Mom", mobile="89161112233")]),
        )
        groups = store.rows("family_groups")
        assert [g["name"] for g in groups] == ["Family Mom"]
        assert record_group == {0: groups[0]["id"], 1: groups[0]["id"]}

        roles = {
            m["client_id"]: (m["relationship_type"], m["is_primary_contact"])
            for m in store.rows("family_members")
        }
        assert roles == {
            index.get("79161112233"): ("parent", True),
            index.get("79162223344"): ("parent", False),
            index.get("79160000011"): ("other", False),
            index.get("79160000022"): ("other", False),
        }

    def test_singleton_main_member(self, store, org_id, counters):
        _, index, _, _ = _materialize(
            store, org_id, counters, make_record(1, first="Solo", mobile="89160001122"),
        )
        members = store.rows("family_members")
        assert len(members) == 1
        assert members[0]["client_id"] == index.get("79160001122")
        assert members[0]["relationship_type"] == "main"
        assert members[0]["is_primary_contact"] is True

    def test_child_without_own_phone_gets_no_member_row(self, store, org_id, counters):
        _materialize(
            store, org_id, counters,
            make_record(1, first="Ann", agents=[agent("Mom", mobile="89161112233")]),
        )
        assert [m["relationship_type"] for m in store.rows("family_members")] == ["parent"]

    def test_same_client_as_guardian_and_child_deduplicated(self, store, org_id, counters):
        _materialize(
            store, org_id, counters,
            make_record(1, first="Teen", mobile="89161112233",
                        agents=[agent("Teen", mobile="89161112233")]),
        )
        members = store.rows("family_members")
        assert len(members) == 1
        assert members[0]["relationship_type"] == "parent"
        assert counters.family_members_deduplicated == 1

    def test_branch_from_record_or_default(self, store, org_id, counters):
        _materialize(
            store, org_id, counters,
            make_record(1, first="A", mobile="89160000001", OfficesAndCompanies=[{"Name": "North"}]),
            make_record(2, first="B", mobile="89160000002"),
            default_branch="Main",
        )
        branches = {g["name"]: g["branch"] for g in store.rows("family_groups")}
        assert branches == {"Family A": "North", "Family B": "Main"}

    def test_branch_first_write_wins(self, store, org_id, counters):
        _materialize(
            store, org_id, counters,
            make_record(1, first="A", mobile="89160000001", OfficesAndCompanies=[{"Name": "North"}]),
        )
        _materialize(
            store, org_id, counters,
            make_record(2, first="A", mobile="89160000001", OfficesAndCompanies=[{"Name": "South"}]),
        )
        groups = store.rows("family_groups")
        assert len(groups) == 1
        assert groups[0]["branch"] == "North"
        assert counters.family_groups_upserted == 1

    def test_name_collision_keeps_one_primary(self, store, org_id, counters):
        # Two unrelated guardians both called "Anna" produce the same family name.
        _materialize(
            store, org_id, counters,
            make_record(1, agents=[agent("Anna", mobile="89160000001")]),
            make_record(2, agents=[agent("Anna", mobile="89160000002")]),
        )
        assert len(store.rows("family_groups")) == 1
        assert len(store.rows("family_members")) == 2
        assert list(_primaries_per_group(store).values()) == [1]

    def test_existing_primary_survives_later_page(self, store, org_id, counters):
        _, first_index, _, _ = _materialize(
            store, org_id, counters,
            make_record(1, agents=[agent("Mom", mobile="89161112233")]),
        )
        _materialize(
            store, org_id, counters,
            make_record(2, agents=[agent("Mom", mobile="89169999999")]),
        )
        primaries = [m for m in store.rows("family_members") if m["is_primary_contact"]]
        assert len(primaries) == 1
        assert primaries[0]["client_id"] == first_index.get("79161112233")

    def test_rerun_is_idempotent(self, store, org_id, counters):
        raws = [
            make_record(1, first="Ann", mobile="89160000011", agents=[agent("Mom", mobile="89161112233")]),
            make_record(2, first="Solo", mobile="89160000022"),
        ]
        _materialize(store, org_id, counters, *raws)
        snapshot = (len(store.rows("family_groups")), len(store.rows("family_members")))
        _materialize(store, org_id, counters, *raws)
        assert (len(store.rows("family_groups")), len(store.rows("family_members"))) == snapshot
        assert all(n == 1 for n in _primaries_per_group(store).values())

    def test_every_group_has_exactly_one_primary(self, store, org_id, counters):
        _materialize(
            store, org_id, counters,
            make_record(1, first="A", mobile="89160000001",
                        agents=[agent("G1", mobile="89161000001"), agent("G2", mobile="89161000002")]),
            make_record(2, first="B", mobile="89160000002", agents=[agent("G2", mobile="89161000002")]),
            make_record(3, first="C", mobile="89160000003"),
            make_record(4, first="D", agents=[agent("G3", mobile="89161000003")]),
        )
        group_ids = {g["id"] for g in store.rows("family_groups")}
        primaries = _primaries_per_group(store)
        assert set(primaries) == group_ids
        assert all(n == 1 for n in primaries.values())
