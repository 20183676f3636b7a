"""roster_etl.client_index

Phone → client index for one page of records.

The whole page's phone set is resolved before any client is created, so
every record in the page sees the same client id for the same phone; the
family clustering downstream depends on that.

Creation order per chunk:
  1. INSERT clients                               (plain insert, RETURNING id)
  2. UPSERT client_phone_numbers ON CONFLICT (phone) DO NOTHING
  3. re-select the chunk's phones                 (insert-then-reselect)
  4. UPSERT client_branches ON CONFLICT (client_id, branch) DO NOTHING

Step 3 settles the cross-run race: when another run created the same phone
between our lookup and our insert, the phone row already points at the
other client.  The index adopts that client id and the client inserted in
step 1 is reported as orphaned (this subsystem never deletes).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from roster_etl.extract import ExtractedContacts
from roster_etl.normalize import normalize_email
from roster_etl.shared import ImportCounters
from roster_etl.store import RecordStore, chunked

log = logging.getLogger(__name__)

PHONE_LOOKUP_CHUNK = 100
CLIENT_CREATE_CHUNK = 50
UNNAMED_CLIENT = "Unnamed contact"


@dataclass
class ClientSeed:
    """Best-effort attributes for a client created from a phone."""

    phone: str
    name: str | None
    email: str | None
    branches: list[str] = field(default_factory=list)
    external_id: str | None = None
    phone_type: str = "other"
    whatsapp_enabled: bool = False
    notes: str | None = None


def _guardian_notes(relationship: str | None, is_customer: bool) -> str | None:
    parts = []
    if relationship:
        parts.append(f"Relationship: {relationship}")
    if is_customer:
        parts.append("Customer")
    return "; ".join(parts) or None


def collect_seeds(
    contacts: Iterable[ExtractedContacts],
    include_own: bool = True,
    default_branch: str | None = None,
) -> dict[str, ClientSeed]:
    """Seed per phone from the first record that referenced it.

    Source order; within a record the own phone precedes guardian phones.
    Only a record's own phone carries an external id.
    """
    seeds: dict[str, ClientSeed] = {}
    for c in contacts:
        rec = c.record
        branches = list(rec.branches) or ([default_branch] if default_branch else [])
        if include_own and c.own_phone and c.own_phone not in seeds:
            seeds[c.own_phone] = ClientSeed(
                phone=c.own_phone,
                name=rec.display_name,
                email=normalize_email(rec.email),
                branches=branches,
                external_id=f"{rec.kind}_{rec.external_id}" if rec.external_id else None,
                phone_type="mobile",
                whatsapp_enabled=True,
            )
        for g in c.guardians:
            if g.phone and g.phone not in seeds:
                seeds[g.phone] = ClientSeed(
                    phone=g.phone,
                    name=g.name,
                    email=g.email,
                    branches=branches,
                    phone_type=g.phone_type,
                    whatsapp_enabled=g.whatsapp_enabled,
                    notes=_guardian_notes(g.relationship, g.is_customer),
                )
    return seeds


class ClientIndex:
    """phone → client_id map, rebuilt for every page."""

    def __init__(
        self,
        store: RecordStore,
        organization_id: str,
        counters: ImportCounters,
    ) -> None:
        self._store = store
        self._organization_id = organization_id
        self._counters = counters
        self.phone_to_client: dict[str, str] = {}

    def get(self, phone: str | None) -> str | None:
        return self.phone_to_client.get(phone) if phone else None

    def resolve_existing(self, phones: Iterable[str]) -> dict[str, str]:
        """Bulk lookup of already indexed phones.  Never creates."""
        ordered = sorted(set(phones))
        found: dict[str, str] = {}
        for batch in chunked(ordered, PHONE_LOOKUP_CHUNK):
            rows = self._store.select_in(
                "client_phone_numbers", "phone", batch,
                columns=("phone", "client_id"),
            )
            for row in rows:
                found[row["phone"]] = row["client_id"]
        self.phone_to_client.update(found)
        self._counters.clients_matched_existing += len(found)
        return found

    def create_missing(self, seeds: dict[str, ClientSeed]) -> dict[str, str]:
        """Create clients for every seeded phone not yet in the map."""
        missing = [s for p, s in seeds.items() if p not in self.phone_to_client]
        created: dict[str, str] = {}
        for batch in chunked(missing, CLIENT_CREATE_CHUNK):
            created.update(self._create_chunk(batch))
        return created

    def _create_chunk(self, batch: Sequence[ClientSeed]) -> dict[str, str]:
        client_rows = [
            {
                "name": s.name or UNNAMED_CLIENT,
                "email": s.email,
                "branch": s.branches[0] if s.branches else None,
                "notes": s.notes,
                "organization_id": self._organization_id,
                "external_id": s.external_id,
            }
            for s in batch
        ]
        inserted = self._store.insert("clients", client_rows, returning=("id",))
        if len(inserted) != len(batch):
            raise RuntimeError(
                f"client insert returned {len(inserted)} ids for {len(batch)} rows"
            )
        new_ids = {s.phone: row["id"] for s, row in zip(batch, inserted)}
        self._counters.clients_created += len(new_ids)

        phone_rows = [
            {
                "client_id": new_ids[s.phone],
                "phone": s.phone,
                "phone_type": s.phone_type,
                "is_primary": True,
                "is_whatsapp_enabled": s.whatsapp_enabled,
            }
            for s in batch
        ]
        written = self._store.upsert(
            "client_phone_numbers", phone_rows,
            conflict_key=("phone",), returning=("phone",),
        )
        self._counters.client_phones_inserted += len(written)

        # Re-select: the stored owner of each phone is authoritative.
        owners = {
            row["phone"]: row["client_id"]
            for row in self._store.select_in(
                "client_phone_numbers", "phone", list(new_ids),
                columns=("phone", "client_id"),
            )
        }
        resolved: dict[str, str] = {}
        for phone, new_id in new_ids.items():
            owner = owners.get(phone, new_id)
            if owner != new_id:
                self._counters.clients_orphaned_by_race += 1
                msg = (
                    f"phone {phone} was indexed concurrently; using client {owner}, "
                    f"client {new_id} left without phone"
                )
                log.warning(msg)
                self._counters.warnings.append(msg)
            resolved[phone] = owner
        self.phone_to_client.update(resolved)

        branch_rows = []
        seen: set[tuple[str, str]] = set()
        for s in batch:
            if resolved[s.phone] != new_ids[s.phone]:
                continue
            for branch in s.branches:
                key = (new_ids[s.phone], branch)
                if key not in seen:
                    seen.add(key)
                    branch_rows.append({"client_id": key[0], "branch": branch})
        if branch_rows:
            linked = self._store.upsert(
                "client_branches", branch_rows,
                conflict_key=("client_id", "branch"), returning=("client_id",),
            )
            self._counters.client_branches_linked += len(linked)
        return resolved

    def build(self, seeds: dict[str, ClientSeed]) -> dict[str, str]:
        """resolve_existing + create_missing over the seeded phone set."""
        self.resolve_existing(seeds.keys())
        self.create_missing(seeds)
        return self.phone_to_client
