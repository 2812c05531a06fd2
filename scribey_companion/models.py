"""
Scribey Companion - Data Models

Typed records extracted from the ScribeyDB SavedVariables table. Field names
follow Python conventions; ``to_dict`` produces the camelCase layout the
Scribey service accepts.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

# Skill cap used when the addon did not record one (Classic, Wrath era)
MAX_SKILL_LEVEL = 525


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class ProfessionRecord:
    """A trade skill known by a character."""

    name: str
    skill_level: int = 0
    max_skill: int = MAX_SKILL_LEVEL

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "skillLevel": self.skill_level,
            "maxSkill": self.max_skill,
            # ScribeyDB does not track individual recipes
            "recipes": [],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ProfessionRecord":
        return cls(
            name=d["name"],
            skill_level=d.get("skillLevel", 0),
            max_skill=d.get("maxSkill", MAX_SKILL_LEVEL),
        )


@dataclass
class CharacterRecord:
    """One character found in ``character_data``."""

    name: str
    realm: str
    class_name: str
    professions: list[ProfessionRecord] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.name}-{self.realm}"

    def to_dict(self, last_update: Optional[int] = None) -> dict:
        return {
            "name": self.name,
            "realm": self.realm,
            "class": self.class_name,
            "professions": [p.to_dict() for p in self.professions],
            "cards": [],
            "lastUpdate": last_update if last_update is not None else now_ms(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "CharacterRecord":
        return cls(
            name=d["name"],
            realm=d["realm"],
            class_name=d.get("class", "WARRIOR"),
            professions=[ProfessionRecord.from_dict(p) for p in d.get("professions", [])],
        )


@dataclass
class AuctionRecord:
    """Auction house scan summary from ``auction_prices``."""

    last_scan_time: float = 0
    scan_count: int = 0
    realm: str = "Unknown"
    item_count: int = 0
    items: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "lastScan": self.last_scan_time,
            "scanCount": self.scan_count,
            "realm": self.realm,
            "itemCount": self.item_count,
            "data": self.items,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AuctionRecord":
        return cls(
            last_scan_time=d.get("lastScan", 0),
            scan_count=d.get("scanCount", 0),
            realm=d.get("realm", "Unknown"),
            item_count=d.get("itemCount", 0),
            items=d.get("data", {}),
        )


@dataclass
class AddonSnapshot:
    """One complete capture of the addon's SavedVariables."""

    characters: dict[str, CharacterRecord] = field(default_factory=dict)
    auction: AuctionRecord = field(default_factory=AuctionRecord)
    crafted_items: dict[str, Any] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)
    captured_at: int = field(default_factory=now_ms)
    format_version: str = "1.0.0"

    def to_dict(self) -> dict:
        """Wire representation sent as ``addonData``."""
        return {
            "characters": {
                key: char.to_dict(last_update=self.captured_at)
                for key, char in self.characters.items()
            },
            "auctionData": self.auction.to_dict(),
            "craftedCards": self.crafted_items,
            "settings": self.settings,
            "timestamp": self.captured_at,
            "version": self.format_version,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AddonSnapshot":
        return cls(
            characters={
                key: CharacterRecord.from_dict(char)
                for key, char in d.get("characters", {}).items()
            },
            auction=AuctionRecord.from_dict(d.get("auctionData", {})),
            crafted_items=d.get("craftedCards", {}),
            settings=d.get("settings", {}),
            captured_at=d.get("timestamp", 0),
            format_version=d.get("version", "1.0.0"),
        )


@dataclass
class QueueItem:
    """A snapshot waiting for delivery."""

    snapshot: AddonSnapshot
    source_path: str
    enqueued_at: int = field(default_factory=now_ms)
    failure_count: int = 0
    item_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    last_error: Optional[str] = None
