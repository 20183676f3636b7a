"""roster_etl.family_cluster

Family clustering by shared guardian phones, over one page of records.

Algorithm (incremental merge over hash maps, records in source order):
  1. Look up every guardian phone of the record in ``phone_to_cluster``.
  2. No hit → allocate a new cluster.  One distinct hit → reuse it.
     Several distinct hits → merge: the first found survives; every other
     cluster's agents and children move into it, its phones are repointed,
     and its entries are discarded.
  3. Add the record's guardian phones to the surviving cluster, point each
     phone at it, append the record as a child, and set the naming agent if
     the cluster has none yet.
  4. Records without guardian phones never join an agent cluster; each one
     is a singleton named after the record itself.  A record's own phone is
     not used for clustering.

Merging on conflict is what makes clustering transitive: A(g1,g2),
B(g2,g3), C(g3) end up in one cluster.

The naming agent is the first phone-bearing guardian of the first record
that touched the cluster (the survivor's, after a merge).  It is stable for
a given source order only; reordering the source may rename a family.

All state lives in a ``ClusterState`` owned by the caller, so separate
pages and tests never share maps.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from roster_etl.extract import ExtractedContacts, GuardianContact

log = logging.getLogger(__name__)


@dataclass
class Cluster:
    cluster_id: int
    agent_phones: list[str]
    children: list[int]
    naming_agent: GuardianContact | None
    singleton: bool = False


@dataclass
class ClusterState:
    phone_to_cluster: dict[str, int] = field(default_factory=dict)
    cluster_agents: dict[int, list[str]] = field(default_factory=dict)
    cluster_children: dict[int, list[int]] = field(default_factory=dict)
    cluster_naming_agent: dict[int, GuardianContact] = field(default_factory=dict)
    singletons: set[int] = field(default_factory=set)
    next_id: int = 0
    merges: int = 0

    def allocate(self) -> int:
        cid = self.next_id
        self.next_id += 1
        self.cluster_agents[cid] = []
        self.cluster_children[cid] = []
        return cid


@dataclass
class ClusterResult:
    record_cluster: dict[int, int]
    clusters: list[Cluster]
    merges: int = 0


def _merge_into(state: ClusterState, survivor: int, merged: int) -> None:
    for phone in state.cluster_agents.pop(merged):
        if phone not in state.cluster_agents[survivor]:
            state.cluster_agents[survivor].append(phone)
        state.phone_to_cluster[phone] = survivor
    state.cluster_children[survivor].extend(state.cluster_children.pop(merged))
    state.cluster_naming_agent.pop(merged, None)
    state.merges += 1


def add_record(state: ClusterState, record_index: int, contacts: ExtractedContacts) -> int:
    """Place one record into ``state``; returns its cluster id."""
    phones = contacts.guardian_phones
    if not phones:
        cid = state.allocate()
        state.cluster_children[cid].append(record_index)
        state.singletons.add(cid)
        return cid

    found: list[int] = []
    for phone in phones:
        cid = state.phone_to_cluster.get(phone)
        if cid is not None and cid not in found:
            found.append(cid)

    if not found:
        target = state.allocate()
    else:
        target = found[0]
        for other in found[1:]:
            log.debug("merging cluster %s into %s (record %s)", other, target, record_index)
            _merge_into(state, target, other)

    for phone in phones:
        if phone not in state.cluster_agents[target]:
            state.cluster_agents[target].append(phone)
        state.phone_to_cluster[phone] = target
    state.cluster_children[target].append(record_index)

    if target not in state.cluster_naming_agent:
        state.cluster_naming_agent[target] = next(g for g in contacts.guardians if g.phone)
    return target


def cluster_records(
    contacts: Sequence[ExtractedContacts],
    state: ClusterState | None = None,
) -> ClusterResult:
    """Cluster resolvable records; ``contacts`` index is the record key.

    Unresolvable records (no phone at all) are ignored and get no cluster.
    """
    state = state or ClusterState()
    for idx, c in enumerate(contacts):
        if c.unresolvable:
            continue
        add_record(state, idx, c)

    # Only surviving ids remain in cluster_children after merges.
    record_cluster: dict[int, int] = {}
    clusters: list[Cluster] = []
    for cid in sorted(state.cluster_children):
        children = sorted(state.cluster_children[cid])
        for child in children:
            record_cluster[child] = cid
        clusters.append(
            Cluster(
                cluster_id=cid,
                agent_phones=list(state.cluster_agents[cid]),
                children=children,
                naming_agent=state.cluster_naming_agent.get(cid),
                singleton=cid in state.singletons,
            )
        )
    return ClusterResult(record_cluster=record_cluster, clusters=clusters, merges=state.merges)
