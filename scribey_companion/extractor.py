"""
Scribey Companion - Domain Extractor

Maps the decoded ScribeyDB table onto typed records. The SavedVariables file
is written by third-party code and may be partially corrupt, so each
character is extracted in isolation: one bad entry is recorded in the ledger
and the rest of the snapshot survives.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .errors import ExtractionError
from .luatable import RawValue
from .models import (
    MAX_SKILL_LEVEL,
    AddonSnapshot,
    AuctionRecord,
    CharacterRecord,
    ProfessionRecord,
    now_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_CLASS = "WARRIOR"
DEFAULT_REALM = "Unknown"
DEFAULT_FORMAT_VERSION = "1.0.0"

VERSION_PATTERN = re.compile(r'version\s*=\s*"([^"]+)"')


@dataclass
class ExtractionLedger:
    """Per-character outcome of an extraction, for diagnostics only."""

    succeeded: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failures)


@dataclass
class ExtractionResult:
    snapshot: AddonSnapshot
    ledger: ExtractionLedger


def _as_map(value: RawValue) -> Optional[dict]:
    """Return value as a dict; an empty table decodes to [] and counts as {}."""
    if isinstance(value, dict):
        return value
    if isinstance(value, list) and not value:
        return {}
    return None


def _as_int(value: Any, field_name: str, key: str) -> int:
    if isinstance(value, bool):
        raise ExtractionError(key, f"{field_name} is a boolean")
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        raise ExtractionError(key, f"{field_name} is not a number: {value!r}")


def extract_version(raw_content: str) -> str:
    """Find the addon version token anywhere in the raw file text."""
    match = VERSION_PATTERN.search(raw_content)
    return match.group(1) if match else DEFAULT_FORMAT_VERSION


def extract_professions(key: str, raw: RawValue) -> list[ProfessionRecord]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        entries = list(raw.values())
    elif isinstance(raw, list):
        entries = raw
    else:
        raise ExtractionError(key, f"professions is a {type(raw).__name__}")

    professions = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name"):
            continue

        skill_level = entry.get("skill_level")
        max_skill = entry.get("max_skill_level")
        professions.append(ProfessionRecord(
            name=str(entry["name"]),
            skill_level=0 if skill_level is None else _as_int(skill_level, "skill_level", key),
            max_skill=MAX_SKILL_LEVEL if max_skill is None else _as_int(max_skill, "max_skill_level", key),
        ))
    return professions


def extract_character(key: str, raw: RawValue) -> CharacterRecord:
    """
    Build a CharacterRecord from one ``character_data`` entry.

    Raises:
        ExtractionError: If the entry is not a table or has unusable fields.
    """
    data = _as_map(raw)
    if data is None:
        raise ExtractionError(key, f"expected a table, got {type(raw).__name__}")

    key_name, _, key_realm = str(key).partition("-")
    name = data.get("character_name") or key_name
    realm = data.get("realm_name") or key_realm or DEFAULT_REALM

    return CharacterRecord(
        name=str(name),
        realm=str(realm),
        class_name=str(data.get("class") or DEFAULT_CLASS),
        professions=extract_professions(key, data.get("professions")),
    )


def extract_auction(raw: RawValue) -> AuctionRecord:
    data = _as_map(raw)
    if not data:
        return AuctionRecord()

    items = _as_map(data.get("data")) or {}
    return AuctionRecord(
        last_scan_time=data.get("last_scan") or 0,
        scan_count=data.get("scan_count") or 0,
        realm=str(data.get("realm") or DEFAULT_REALM),
        item_count=len(items),
        items=items,
    )


def extract_snapshot(
    root: RawValue,
    raw_content: str = "",
    clock: Callable[[], int] = now_ms,
) -> Optional[ExtractionResult]:
    """
    Extract an AddonSnapshot from the decoded ScribeyDB table.

    Args:
        root: The reduced value of the ScribeyDB global.
        raw_content: The file text, searched for the addon version.
        clock: Source of the capture timestamp (epoch ms).

    Returns:
        The snapshot and its ledger, or None when there is no character data.
    """
    db = _as_map(root)
    if db is None:
        logger.warning("ScribeyDB is not a table")
        return None

    if "character_data" not in db:
        logger.warning("No character_data section found in ScribeyDB")
        return None

    character_data = _as_map(db["character_data"])
    if character_data is None:
        logger.warning("character_data in ScribeyDB is not a table")
        return None

    logger.info(f"Found {len(character_data)} characters: {', '.join(map(str, character_data))}")

    ledger = ExtractionLedger()
    characters: dict[str, CharacterRecord] = {}

    for key, raw_char in character_data.items():
        key = str(key)
        try:
            character = extract_character(key, raw_char)
        except ExtractionError as e:
            ledger.failures[key] = e.reason
            logger.warning(f"Failed to extract {key}: {e.reason}")
            continue
        except Exception as e:
            ledger.failures[key] = str(e)
            logger.exception(f"Unexpected error extracting {key}")
            continue

        characters[key] = character
        ledger.succeeded.append(key)
        logger.debug(
            f"{key}: {character.name}@{character.realm} "
            f"({len(character.professions)} professions)"
        )

    auction = extract_auction(db.get("auction_prices"))
    logger.info(
        f"Found auction data: {auction.item_count} items, "
        f"last scan: {auction.last_scan_time or 'never'}"
    )

    snapshot = AddonSnapshot(
        characters=characters,
        auction=auction,
        crafted_items=_as_map(db.get("crafted_cards")) or {},
        settings=_as_map(db.get("settings")) or {},
        captured_at=clock(),
        format_version=extract_version(raw_content),
    )

    logger.info(
        f"Extracted {len(characters)}/{ledger.total} characters "
        f"and {auction.item_count} auction items"
    )
    return ExtractionResult(snapshot=snapshot, ledger=ledger)
