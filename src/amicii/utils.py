"""Naming, slug and timestamp helpers shared by the engines."""

from __future__ import annotations

import hashlib
import random
import re
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Optional

# Agent names are adjective+noun pairs ("AmberFox", "JadeWolf"): memorable,
# easy to type, and deliberately unrelated to the agent's role.
ADJECTIVES: tuple[str, ...] = (
    # Colors
    "Red", "Orange", "Pink", "Black", "Purple", "Blue", "Brown", "White", "Green",
    "Chartreuse", "Lilac", "Fuchsia", "Azure", "Amber", "Coral", "Crimson", "Cyan",
    "Gold", "Gray", "Indigo", "Ivory", "Jade", "Lavender", "Magenta", "Maroon",
    "Navy", "Olive", "Pearl", "Rose", "Ruby", "Sage", "Scarlet", "Silver", "Teal",
    "Topaz", "Violet", "Cobalt", "Copper", "Bronze", "Emerald", "Sapphire", "Turquoise",
    # Weather
    "Sunny", "Misty", "Foggy", "Stormy", "Windy", "Frosty", "Dusty", "Hazy", "Cloudy", "Rainy",
    # Descriptive
    "Swift", "Quiet", "Bold", "Calm", "Bright", "Dark", "Wild", "Silent", "Gentle", "Rustic",
)

NOUNS: tuple[str, ...] = (
    # Landscape
    "Stone", "Lake", "Creek", "Pond", "Mountain", "Hill", "Snow", "River", "Forest",
    "Valley", "Canyon", "Meadow", "Prairie", "Desert", "Island", "Cliff", "Cave",
    "Glacier", "Waterfall", "Spring", "Stream", "Reef", "Dune", "Ridge", "Peak",
    "Gorge", "Marsh", "Brook", "Glen", "Grove", "Hollow", "Basin", "Cove", "Bay", "Harbor",
    # Animals
    "Dog", "Cat", "Bear", "Fox", "Wolf", "Hawk", "Eagle", "Owl", "Deer", "Elk", "Moose",
    "Falcon", "Raven", "Heron", "Crane", "Otter", "Beaver", "Badger", "Finch", "Robin",
    "Sparrow", "Lynx", "Puma",
    # Structures
    "Castle", "Tower", "Bridge", "Forge", "Mill", "Barn", "Gate", "Anchor", "Lantern",
    "Beacon", "Compass",
)

MAX_NAME_ATTEMPTS = 100
MAX_SLUG_LENGTH = 64
MAX_SUGGESTIONS = 3

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_AGENT_NAME_RE = re.compile(r"[^A-Za-z0-9]+")

# lowercase -> canonical capitalization, built once at import time.
_CANONICAL_AGENT_NAMES: dict[str, str] = {
    f"{adj}{noun}".lower(): f"{adj}{noun}" for adj in ADJECTIVES for noun in NOUNS
}


def slugify(value: str) -> str:
    """Normalize a human-readable value into a slug of at most 64 characters."""
    normalized = value.strip().lower()
    slug = _SLUG_RE.sub("-", normalized).strip("-")[:MAX_SLUG_LENGTH].rstrip("-")
    return slug or "project"


def project_slug(human_key: str) -> str:
    """Derive a stable slug from an absolute workspace path.

    The last two path components keep the slug readable; the short SHA-1 of
    the full key keeps two checkouts named alike apart.
    """
    parts = [part for part in human_key.replace("\\", "/").split("/") if part]
    readable = "-".join(parts[-2:])
    digest = hashlib.sha1(human_key.encode("utf-8")).hexdigest()[:8]
    readable_slug = _SLUG_RE.sub("-", readable.lower()).strip("-")
    # Trim the readable part, never the hash suffix.
    budget = MAX_SLUG_LENGTH - len(digest) - 1
    readable_slug = readable_slug[:budget].rstrip("-")
    return f"{readable_slug}-{digest}" if readable_slug else digest


def sanitize_agent_name(value: str) -> Optional[str]:
    """Normalize user-provided agent name; return None if nothing remains."""
    cleaned = _AGENT_NAME_RE.sub("", value.strip())
    if not cleaned:
        return None
    return cleaned[:128]


def validate_agent_name_format(name: str) -> bool:
    """Return True when ``name`` is one of the adjective+noun combinations.

    Case-insensitive, matching how the directory compares names.
    """
    if not name:
        return False
    return name.lower() in _CANONICAL_AGENT_NAMES


def canonical_agent_name(hint: str | None) -> Optional[str]:
    """Map a hint such as ``"amber fox"`` to ``"AmberFox"``, or None when it is not a valid name."""
    if not hint:
        return None
    cleaned = sanitize_agent_name(hint)
    if cleaned is None:
        return None
    return _CANONICAL_AGENT_NAMES.get(cleaned.lower())


def generate_agent_name(rng: random.Random | None = None) -> str:
    """Return a random adjective+noun combination."""
    chooser = rng or random
    return f"{chooser.choice(ADJECTIVES)}{chooser.choice(NOUNS)}"


def generate_unique_agent_name(existing: Iterable[str], *, seed: str | None = None) -> str:
    """Draw names until one is free, then fall back to a numeric suffix.

    A non-empty ``seed`` makes the sequence of draws deterministic.
    """
    taken = {name.lower() for name in existing}
    rng = random.Random(seed) if seed else random.Random()
    candidate = generate_agent_name(rng)
    for _ in range(MAX_NAME_ATTEMPTS):
        if candidate.lower() not in taken:
            return candidate
        candidate = generate_agent_name(rng)
    base = candidate
    suffix = 2
    while f"{base}{suffix}".lower() in taken:
        suffix += 1
    return f"{base}{suffix}"


def suggest_matches(needle: str, candidates: Iterable[str], *, limit: int = MAX_SUGGESTIONS) -> list[str]:
    """Return up to ``limit`` candidates containing ``needle`` case-insensitively."""
    lowered = needle.strip().lower()
    if not lowered:
        return []
    matches: list[str] = []
    for candidate in candidates:
        if lowered in candidate.lower() and candidate not in matches:
            matches.append(candidate)
            if len(matches) >= limit:
                break
    return matches


def iso_utc(dt: Any) -> Optional[str]:
    """Return ISO-8601 in UTC; naive datetimes from SQLite are taken to be UTC already."""
    if dt is None:
        return None
    if isinstance(dt, str):
        try:
            parsed = datetime.fromisoformat(dt)
        except ValueError:
            return dt
        dt = parsed
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso_naive(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into naive UTC. Raises ValueError on bad input."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
