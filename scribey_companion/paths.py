"""
Scribey Companion - WoW Path Resolution

Finds the WoW installation and expands it into the SavedVariables files the
watcher should follow. WoW keeps account-wide SavedVariables at:

    <install>/_classic_/WTF/Account/<ACCOUNT>/SavedVariables/Scribey.lua

with one ``<ACCOUNT>`` directory per game account that has logged in.
"""

from __future__ import annotations

import logging
import os
import platform
from pathlib import Path
from typing import Optional, Union

from .errors import PathError

logger = logging.getLogger(__name__)

DEFAULT_ADDON_FILE = "Scribey.lua"
DEFAULT_FLAVOR = "_classic_"

# Files or directories present in any WoW installation root
INSTALL_MARKERS = (
    "Wow.exe",
    "WowClassic.exe",
    "_retail_",
    "_classic_",
    "Interface",
)


def validate_wow_path(wow_path: Union[str, Path, None]) -> bool:
    """Check that ``wow_path`` exists and looks like a WoW installation root."""
    if not wow_path:
        return False
    root = Path(wow_path)
    if not root.exists():
        return False
    return any((root / marker).exists() for marker in INSTALL_MARKERS)


def resolve_saved_variables(
    install_root: Union[str, Path],
    addon_file: str = DEFAULT_ADDON_FILE,
    flavor: str = DEFAULT_FLAVOR,
) -> list[Path]:
    """
    Expand an installation root into every account's SavedVariables file.

    Args:
        install_root: WoW installation directory.
        addon_file: SavedVariables file name of the addon.
        flavor: Game flavor directory (``_classic_``, ``_retail_``, ...).

    Returns:
        Sorted absolute paths, one per account.

    Raises:
        PathError: If the root is not a WoW install, the WTF subtree is
            missing, or no account has the addon file yet.
    """
    root = Path(install_root).expanduser()

    if not validate_wow_path(root):
        raise PathError(f"Invalid WoW installation path: {root}")

    wtf_path = root / flavor / "WTF"
    if not wtf_path.is_dir():
        raise PathError(
            f"WTF directory not found at {wtf_path}. Make sure WoW is installed "
            "and you have logged in at least once."
        )

    files = sorted(
        path.resolve()
        for path in wtf_path.glob(f"Account/*/SavedVariables/{addon_file}")
        if path.is_file()
    )

    if not files:
        raise PathError(
            f"No {addon_file} files found. Make sure the addon is installed "
            "and you have logged in with at least one character."
        )

    logger.info(f"Found {len(files)} {addon_file} files under {wtf_path}")
    return files


# =============================================================================
# Platform-Specific Install Detection
# =============================================================================


def _candidate_install_paths() -> list[Path]:
    system = platform.system()
    candidates: list[Path] = []

    if system == "Windows":
        for env_var in ("PROGRAMFILES(X86)", "PROGRAMFILES"):
            base = os.environ.get(env_var)
            if base:
                candidates.append(Path(base) / "World of Warcraft")
        for drive in ("C:", "D:", "E:"):
            candidates.append(Path(f"{drive}\\") / "World of Warcraft")
            candidates.append(Path(f"{drive}\\") / "Games" / "World of Warcraft")

    elif system == "Darwin":
        candidates.append(Path("/Applications") / "World of Warcraft")
        candidates.append(Path.home() / "Applications" / "World of Warcraft")

    elif system == "Linux":
        # Wine and Lutris prefixes
        wine_roots = [
            Path.home() / ".wine" / "drive_c",
            Path.home() / "Games" / "battlenet" / "drive_c",
            Path.home() / "Games" / "world-of-warcraft" / "drive_c",
        ]
        for wine_root in wine_roots:
            candidates.append(wine_root / "Program Files (x86)" / "World of Warcraft")
            candidates.append(wine_root / "Program Files" / "World of Warcraft")

    return candidates


def find_wow_install_paths() -> list[Path]:
    """
    Find WoW installations in the usual locations for this platform.

    Returns:
        Existing installation roots, in search order.
    """
    paths = []
    for candidate in _candidate_install_paths():
        if candidate not in paths and validate_wow_path(candidate):
            paths.append(candidate)
    return paths


def get_default_wow_path() -> Optional[Path]:
    """First detected installation root, or None."""
    paths = find_wow_install_paths()
    return paths[0] if paths else None
