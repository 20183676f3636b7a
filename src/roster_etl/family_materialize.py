"""roster_etl.family_materialize

Turns one page's clusters into family_groups + family_members rows.

  - family name  : "Family " + display name of the naming agent
                   (singletons: of the record itself)
                   nameless clusters all share "Family Unknown"
  - family_groups: UPSERT ON CONFLICT (name, organization_id) DO NOTHING,
                   so the first import to create a family fixes its branch;
                   then re-selected by name for a definitive name → id map.
  - family_members:
        agent phones  → relationship 'parent', primary for the first agent
        child records → their own client, 'other', never primary
        singletons    → the record's own client, 'main', primary
    de-duplicated on (family_group_id, client_id) before the upsert, which
    is ON CONFLICT DO NOTHING so an established member is never rewritten.

Exactly one primary contact per group: when a group already has a primary
in the store (earlier page, or another cluster that produced the same
family name) no new primary is written for it; otherwise only the first
candidate keeps the flag.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from roster_etl.client_index import ClientIndex
from roster_etl.extract import ExtractedContacts
from roster_etl.family_cluster import Cluster, ClusterResult
from roster_etl.shared import ImportCounters
from roster_etl.store import RecordStore, chunked

log = logging.getLogger(__name__)

FAMILY_NAME_PREFIX = "Family "
UNKNOWN_FAMILY = "Unknown"
FAMILY_GROUP_CHUNK = 50
FAMILY_LOOKUP_CHUNK = 100
FAMILY_MEMBER_CHUNK = 100

ROLE_PARENT = "parent"
ROLE_OTHER = "other"
ROLE_MAIN = "main"


@dataclass
class MemberCandidate:
    family_name: str
    client_id: str
    relationship_type: str
    is_primary_contact: bool


def family_name_for(cluster: Cluster, contacts: Sequence[ExtractedContacts]) -> str:
    """Family name: the naming agent's name, else the first named child.

    When nobody in the cluster has a name the result is "Family Unknown".
    Groups are keyed on (name, organization_id), so every nameless cluster
    in an organization lands in that one shared group, with the first
    primary contact written to it.
    """
    name = cluster.naming_agent.name if cluster.naming_agent else None
    if not name:
        for child in cluster.children:
            name = contacts[child].record.display_name
            if name:
                break
    return FAMILY_NAME_PREFIX + (name or UNKNOWN_FAMILY)


def _cluster_members(
    cluster: Cluster,
    family_name: str,
    contacts: Sequence[ExtractedContacts],
    index: ClientIndex,
) -> list[MemberCandidate]:
    members: list[MemberCandidate] = []
    if cluster.singleton:
        client_id = index.get(contacts[cluster.children[0]].own_phone)
        if client_id:
            members.append(MemberCandidate(family_name, client_id, ROLE_MAIN, True))
        return members

    for pos, phone in enumerate(cluster.agent_phones):
        client_id = index.get(phone)
        if client_id:
            members.append(MemberCandidate(family_name, client_id, ROLE_PARENT, pos == 0))
    for child in cluster.children:
        client_id = index.get(contacts[child].own_phone)
        if client_id:
            members.append(MemberCandidate(family_name, client_id, ROLE_OTHER, False))
    return members


class FamilyMaterializer:
    def __init__(
        self,
        store: RecordStore,
        organization_id: str,
        counters: ImportCounters,
        default_branch: str | None = None,
    ) -> None:
        self._store = store
        self._organization_id = organization_id
        self._counters = counters
        self._default_branch = default_branch

    def materialize(
        self,
        result: ClusterResult,
        contacts: Sequence[ExtractedContacts],
        index: ClientIndex,
    ) -> dict[int, str]:
        """Write groups and members; return record index → family_group_id."""
        group_rows: dict[str, dict[str, object]] = {}
        cluster_names: dict[int, str] = {}
        candidates: list[MemberCandidate] = []

        for cluster in result.clusters:
            members = _cluster_members(
                cluster, family_name_for(cluster, contacts), contacts, index
            )
            if not members:
                msg = f"cluster {cluster.cluster_id} has no resolvable client; no family group"
                log.warning(msg)
                self._counters.warnings.append(msg)
                continue
            name = members[0].family_name
            cluster_names[cluster.cluster_id] = name
            candidates.extend(members)
            if name not in group_rows:
                branch = next(
                    (contacts[c].record.primary_branch for c in cluster.children
                     if contacts[c].record.primary_branch),
                    self._default_branch,
                )
                group_rows[name] = {
                    "name": name,
                    "branch": branch,
                    "organization_id": self._organization_id,
                }

        name_to_id = self._upsert_groups(list(group_rows.values()))
        self._upsert_members(candidates, name_to_id)

        record_group: dict[int, str] = {}
        for cluster in result.clusters:
            group_id = name_to_id.get(cluster_names.get(cluster.cluster_id, ""))
            if group_id is None:
                continue
            for child in cluster.children:
                record_group[child] = group_id
        return record_group

    def _upsert_groups(self, rows: list[dict[str, object]]) -> dict[str, str]:
        for batch in chunked(rows, FAMILY_GROUP_CHUNK):
            written = self._store.upsert(
                "family_groups", batch,
                conflict_key=("name", "organization_id"),
                returning=("id", "name"),
            )
            self._counters.family_groups_upserted += len(written)

        # DO NOTHING returns no rows for existing groups; re-select every name.
        name_to_id: dict[str, str] = {}
        names = [str(r["name"]) for r in rows]
        for batch in chunked(names, FAMILY_LOOKUP_CHUNK):
            for row in self._store.select_in(
                "family_groups", "name", batch,
                columns=("id", "name"),
                filters={"organization_id": self._organization_id},
            ):
                name_to_id[row["name"]] = row["id"]
        return name_to_id

    def _existing_primaries(self, group_ids: list[str]) -> dict[str, str]:
        primaries: dict[str, str] = {}
        for batch in chunked(group_ids, FAMILY_LOOKUP_CHUNK):
            for row in self._store.select_in(
                "family_members", "family_group_id", batch,
                columns=("family_group_id", "client_id"),
                filters={"is_primary_contact": True},
            ):
                primaries.setdefault(row["family_group_id"], row["client_id"])
        return primaries

    def _upsert_members(
        self,
        candidates: list[MemberCandidate],
        name_to_id: dict[str, str],
    ) -> None:
        rows: dict[tuple[str, str], dict[str, object]] = {}
        for m in candidates:
            group_id = name_to_id.get(m.family_name)
            if group_id is None:
                continue
            key = (group_id, m.client_id)
            if key in rows:
                # Same client reached twice (guardian and own phone, or two
                # clusters sharing a family name): keep the first role.
                self._counters.family_members_deduplicated += 1
                if m.is_primary_contact:
                    rows[key]["is_primary_contact"] = True
                continue
            rows[key] = {
                "family_group_id": group_id,
                "client_id": m.client_id,
                "relationship_type": m.relationship_type,
                "is_primary_contact": m.is_primary_contact,
            }

        existing = self._existing_primaries(sorted({g for g, _ in rows}))
        primary_taken: dict[str, str] = dict(existing)
        by_group: dict[str, list[dict[str, object]]] = {}
        for (group_id, client_id), row in rows.items():
            by_group.setdefault(group_id, []).append(row)
            if not row["is_primary_contact"]:
                continue
            if group_id in primary_taken and primary_taken[group_id] != client_id:
                row["is_primary_contact"] = False
            else:
                primary_taken[group_id] = client_id
        for group_id, group_rows in by_group.items():
            if group_id not in primary_taken:
                group_rows[0]["is_primary_contact"] = True
                primary_taken[group_id] = str(group_rows[0]["client_id"])

        member_rows = list(rows.values())
        for batch in chunked(member_rows, FAMILY_MEMBER_CHUNK):
            written = self._store.upsert(
                "family_members", batch,
                conflict_key=("family_group_id", "client_id"),
                returning=("id",),
            )
            self._counters.family_members_upserted += len(written)
