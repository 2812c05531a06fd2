"""
Scribey Companion

Watches the Scribey addon's SavedVariables file, decodes the ScribeyDB
table and uploads character, profession and auction data to scribey.app.
"""

from .client import CompanionClient, ConnectionTest, UploadResponse
from .config import CompanionSettings, ConfigManager, ConfigProvider, get_settings
from .errors import (
    CommandError,
    CompanionError,
    DecodeError,
    DeliveryError,
    ExtractionError,
    PathError,
    QueueDrop,
)
from .extractor import ExtractionLedger, ExtractionResult, extract_snapshot
from .luatable import NOT_FOUND, decode_global, encode, find_global, parse, reduce
from .models import (
    AddonSnapshot,
    AuctionRecord,
    CharacterRecord,
    ProfessionRecord,
    QueueItem,
)
from .paths import find_wow_install_paths, resolve_saved_variables, validate_wow_path
from .sync import DrainResult, QueueStore, UploadQueue
from .watcher import ChangeDetector, WatchStatus, WatchTarget

__version__ = "1.0.4"
__all__ = [
    # Pipeline
    "ChangeDetector",
    "UploadQueue",
    "QueueStore",
    "CompanionClient",

    # Decoding and extraction
    "parse",
    "reduce",
    "find_global",
    "decode_global",
    "encode",
    "NOT_FOUND",
    "extract_snapshot",

    # Paths
    "validate_wow_path",
    "resolve_saved_variables",
    "find_wow_install_paths",

    # Configuration
    "CompanionSettings",
    "ConfigManager",
    "ConfigProvider",
    "get_settings",

    # Data models
    "AddonSnapshot",
    "CharacterRecord",
    "ProfessionRecord",
    "AuctionRecord",
    "QueueItem",
    "ExtractionLedger",
    "ExtractionResult",
    "DrainResult",
    "WatchTarget",
    "WatchStatus",
    "ConnectionTest",
    "UploadResponse",

    # Exceptions
    "CompanionError",
    "PathError",
    "DecodeError",
    "ExtractionError",
    "DeliveryError",
    "QueueDrop",
    "CommandError",
]
