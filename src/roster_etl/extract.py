"""roster_etl.extract

Tolerant decode of CRM payloads + candidate-contact extraction.

The CRM returns loosely shaped JSON: the same field may arrive as
``firstName`` or ``FirstName``, branches as ``location`` or as an
``OfficesAndCompanies`` list, guardians under ``Agents`` or ``agents``.
``decode_record`` maps that shape into the strict ``RawSourceRecord``
exactly once; everything downstream reads only the dataclasses below.

``extract`` then produces the record's own phone key and its guardian
contacts.  A record with no usable phone anywhere is flagged
``unresolvable`` and must be skipped by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from roster_etl.normalize import (
    display_name,
    normalize_email,
    normalize_phone,
    normalize_space,
    parse_bool,
    trim,
)

RECORD_KINDS = ("lead", "student")


# ---------------------------------------------------------------------------
# Strict record shape
# ---------------------------------------------------------------------------

@dataclass
class GuardianRef:
    first_name: str | None = None
    last_name: str | None = None
    middle_name: str | None = None
    mobile: str | None = None
    phone: str | None = None
    email: str | None = None
    relationship: str | None = None
    is_customer: bool = False
    use_mobile_by_system: bool = False

    @property
    def display_name(self) -> str | None:
        return display_name(self.last_name, self.first_name, self.middle_name)


@dataclass
class RawSourceRecord:
    kind: str
    external_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    middle_name: str | None = None
    mobile: str | None = None
    phone: str | None = None
    email: str | None = None
    branches: list[str] = field(default_factory=list)
    status: str | None = None
    guardians: list[GuardianRef] = field(default_factory=list)
    date_of_birth: str | None = None
    notes: str | None = None
    extra_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str | None:
        return display_name(self.last_name, self.first_name, self.middle_name)

    @property
    def primary_branch(self) -> str | None:
        return self.branches[0] if self.branches else None


@dataclass
class GuardianContact:
    """A guardian after normalization.  ``phone`` is None when unusable."""

    phone: str | None
    name: str | None
    email: str | None
    relationship: str | None = None
    phone_type: str = "other"
    is_customer: bool = False
    whatsapp_enabled: bool = False


@dataclass
class ExtractedContacts:
    record: RawSourceRecord
    own_phone: str | None
    guardians: list[GuardianContact]

    @property
    def guardian_phones(self) -> list[str]:
        """Ordered, de-duplicated guardian phone keys."""
        seen: set[str] = set()
        phones: list[str] = []
        for g in self.guardians:
            if g.phone and g.phone not in seen:
                seen.add(g.phone)
                phones.append(g.phone)
        return phones

    @property
    def unresolvable(self) -> bool:
        return self.own_phone is None and not self.guardian_phones


# ---------------------------------------------------------------------------
# Tolerant decode
# ---------------------------------------------------------------------------

def _first(raw: dict[str, Any], *keys: str) -> Any:
    """Return the first present, non-empty value among ``keys``."""
    for k in keys:
        v = raw.get(k)
        if v is None:
            continue
        if isinstance(v, str) and not v.strip():
            continue
        return v
    return None


def _decode_branches(raw: dict[str, Any]) -> list[str]:
    branches: list[str] = []
    offices = _first(raw, "OfficesAndCompanies", "officesAndCompanies", "Offices", "offices")
    if isinstance(offices, list):
        for office in offices:
            name = trim(office.get("Name") or office.get("name")) if isinstance(office, dict) else trim(office)
            if name and name not in branches:
                branches.append(name)
    single = trim(_first(raw, "location", "Location", "branch", "Branch", "OfficeName"))
    if single and single not in branches:
        branches.append(single)
    return branches


def _decode_extra_fields(raw: dict[str, Any]) -> dict[str, Any]:
    extra: dict[str, Any] = {}
    fields = _first(raw, "ExtraFields", "extraFields")
    if isinstance(fields, list):
        for f in fields:
            if not isinstance(f, dict):
                continue
            name = trim(f.get("name") or f.get("Name")) or "custom_field"
            extra[name] = f.get("value", f.get("Value"))
    return extra


def decode_guardian(raw: dict[str, Any]) -> GuardianRef:
    return GuardianRef(
        first_name=normalize_space(_first(raw, "FirstName", "firstName")),
        last_name=normalize_space(_first(raw, "LastName", "lastName")),
        middle_name=normalize_space(_first(raw, "MiddleName", "middleName")),
        mobile=trim(_first(raw, "Mobile", "mobile", "MobilePhone")),
        phone=trim(_first(raw, "Phone", "phone")),
        email=trim(_first(raw, "EMail", "Email", "email")),
        relationship=normalize_space(_first(raw, "WhoIs", "whoIs", "relation", "Relationship")),
        is_customer=parse_bool(_first(raw, "IsCustomer", "isCustomer")),
        use_mobile_by_system=parse_bool(_first(raw, "UseMobileBySystem", "useMobileBySystem")),
    )


def decode_record(raw: dict[str, Any], kind: str) -> RawSourceRecord:
    """Map one CRM payload dict onto ``RawSourceRecord``.

    Never raises on missing or oddly typed fields; a non-dict payload
    decodes to an empty record of the given kind.
    """
    if kind not in RECORD_KINDS:
        raise ValueError(f"unknown record kind: {kind!r}")
    if not isinstance(raw, dict):
        return RawSourceRecord(kind=kind)

    agents = _first(raw, "Agents", "agents")
    guardians = [decode_guardian(a) for a in agents if isinstance(a, dict)] if isinstance(agents, list) else []

    return RawSourceRecord(
        kind=kind,
        external_id=trim(_first(raw, "Id", "id", "ID")),
        first_name=normalize_space(_first(raw, "FirstName", "firstName")),
        last_name=normalize_space(_first(raw, "LastName", "lastName")),
        middle_name=normalize_space(_first(raw, "MiddleName", "middleName")),
        mobile=trim(_first(raw, "Mobile", "mobile", "MobilePhone")),
        phone=trim(_first(raw, "Phone", "phone")),
        email=trim(_first(raw, "EMail", "Email", "email")),
        branches=_decode_branches(raw),
        status=normalize_space(_first(raw, "StatusName", "Status", "status")),
        guardians=guardians,
        date_of_birth=trim(_first(raw, "Birthday", "DateOfBirth", "dateOfBirth")),
        notes=normalize_space(_first(raw, "Comment", "comment", "notes", "Notes")),
        extra_fields=_decode_extra_fields(raw),
    )


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def _guardian_contact(g: GuardianRef) -> GuardianContact:
    # Mobile is tried before the generic phone field.
    phone: str | None = None
    phone_type = "other"
    for raw_phone, ptype in ((g.mobile, "mobile"), (g.phone, "other")):
        phone = normalize_phone(raw_phone)
        if phone:
            phone_type = ptype
            break
    return GuardianContact(
        phone=phone,
        name=g.display_name,
        email=normalize_email(g.email),
        relationship=g.relationship,
        phone_type=phone_type,
        is_customer=g.is_customer,
        whatsapp_enabled=g.use_mobile_by_system,
    )


def _own_phone(record: RawSourceRecord) -> str | None:
    for raw_phone in (record.mobile, record.phone):
        phone = normalize_phone(raw_phone)
        if phone:
            return phone
    return None


def extract(record: RawSourceRecord) -> ExtractedContacts:
    """Return the record's own phone key and its normalized guardian list.

    Like guardians, the own phone is the first of mobile, then phone, that
    normalizes; a junk mobile does not hide a usable phone.
    """
    return ExtractedContacts(
        record=record,
        own_phone=_own_phone(record),
        guardians=[_guardian_contact(g) for g in record.guardians],
    )
