"""roster_etl.status_rules

YAML-driven classification of free-text CRM status labels.

Responsibilities:
  - Load and validate the vocabulary file (config/status_vocabulary.yml by
    default, overridable from the CLI)
  - Classify a raw status label for a record kind: ordered regex rules,
    case-insensitive ``re.search``, first match wins, else the kind default

Usage:
    from roster_etl.status_rules import load_status_vocabulary

    vocabulary = load_status_vocabulary()
    vocabulary.classify("student", "Активный")   # → "active"
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_VOCABULARY_PATH = Path(__file__).parent / "config" / "status_vocabulary.yml"

VALID_STATUSES: dict[str, frozenset[str]] = {
    "lead": frozenset({"new", "in_progress", "trial", "converted", "postponed", "lost"}),
    "student": frozenset({"active", "paused", "archived"}),
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class StatusVocabularyError(ValueError):
    """Raised when a status vocabulary file fails schema validation."""


# ---------------------------------------------------------------------------
# Vocabulary dataclasses
# ---------------------------------------------------------------------------

@dataclass
class StatusRule:
    status: str
    pattern: re.Pattern[str]


@dataclass
class StatusVocabulary:
    """Parsed, validated status vocabulary."""

    version: str
    yaml_hash: str
    defaults: dict[str, str]
    rules: dict[str, list[StatusRule]]
    raw_yaml: str = field(repr=False, default="")

    def classify(self, kind: str, raw_status: str | None) -> str:
        """Map a raw source label onto the normalized status for ``kind``."""
        if kind not in self.defaults:
            raise StatusVocabularyError(f"No vocabulary for record kind '{kind}'.")
        if raw_status:
            for rule in self.rules[kind]:
                if rule.pattern.search(raw_status):
                    return rule.status
        return self.defaults[kind]


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_status_vocabulary(yaml_path: Path | None = None) -> StatusVocabulary:
    """Load, validate and compile a status vocabulary.

    Raises:
        StatusVocabularyError: If the file does not match the schema or a
            pattern does not compile.
        FileNotFoundError: If the YAML file does not exist.
    """
    yaml_path = yaml_path or DEFAULT_VOCABULARY_PATH
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_status_vocabulary(data)

    defaults: dict[str, str] = {}
    rules: dict[str, list[StatusRule]] = {}
    for kind in VALID_STATUSES:
        section = data[kind]
        defaults[kind] = section["default"]
        rules[kind] = [
            StatusRule(status=r["status"], pattern=re.compile(r["pattern"], re.IGNORECASE))
            for r in section.get("rules") or []
        ]
    return StatusVocabulary(
        version=str(data.get("version", "")),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        defaults=defaults,
        rules=rules,
        raw_yaml=raw,
    )


def validate_status_vocabulary(data: dict[str, Any]) -> None:
    """Raise StatusVocabularyError if data does not match the schema.

    Validates:
      - one mapping per record kind, each with a valid ``default``
      - every rule has a known ``status`` and a compilable ``pattern``
    """
    if not isinstance(data, dict):
        raise StatusVocabularyError("YAML root must be a mapping.")

    missing = set(VALID_STATUSES) - set(data.keys())
    if missing:
        raise StatusVocabularyError(f"Missing record kinds: {sorted(missing)}")

    for kind, allowed in VALID_STATUSES.items():
        section = data[kind]
        if not isinstance(section, dict):
            raise StatusVocabularyError(f"'{kind}' must be a mapping.")
        default = section.get("default")
        if default not in allowed:
            raise StatusVocabularyError(
                f"Invalid default '{default}' for {kind}. Must be one of {sorted(allowed)}."
            )
        rules = section.get("rules") or []
        if not isinstance(rules, list):
            raise StatusVocabularyError(f"'{kind}.rules' must be a list.")
        for i, rule in enumerate(rules):
            if not isinstance(rule, dict) or "status" not in rule or "pattern" not in rule:
                raise StatusVocabularyError(f"{kind}.rules[{i}] needs 'status' and 'pattern'.")
            if rule["status"] not in allowed:
                raise StatusVocabularyError(
                    f"{kind}.rules[{i}] status '{rule['status']}' must be one of {sorted(allowed)}."
                )
            try:
                re.compile(str(rule["pattern"]))
            except re.error as exc:
                raise StatusVocabularyError(f"{kind}.rules[{i}] pattern does not compile: {exc}")
