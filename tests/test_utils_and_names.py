from __future__ import annotations

import hashlib
import random
from datetime import datetime, timezone

import pytest

from amicii.utils import (
    ADJECTIVES,
    MAX_SLUG_LENGTH,
    NOUNS,
    canonical_agent_name,
    generate_agent_name,
    generate_unique_agent_name,
    iso_utc,
    parse_iso_naive,
    project_slug,
    sanitize_agent_name,
    slugify,
    suggest_matches,
    validate_agent_name_format,
)


def test_project_slug_uses_last_two_components_and_hash():
    key = "/home/dev/acme/backend"
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:8]
    assert project_slug(key) == f"acme-backend-{digest}"


def test_project_slug_distinguishes_same_named_checkouts():
    a = project_slug("/home/alice/acme/backend")
    b = project_slug("/srv/mirror/acme/backend")
    assert a != b
    assert a.startswith("acme-backend-")
    assert b.startswith("acme-backend-")


def test_project_slug_is_stable_and_bounded():
    key = "/" + "/".join(["very-long-directory-name-segment"] * 6)
    slug = project_slug(key)
    assert slug == project_slug(key)
    assert len(slug) <= MAX_SLUG_LENGTH
    assert slug.endswith(hashlib.sha1(key.encode("utf-8")).hexdigest()[:8])


def test_project_slug_windows_path():
    slug = project_slug("C:\\Users\\dev\\Widget App")
    assert slug.startswith("dev-widget-app-")


def test_slugify_basic():
    assert slugify("  Hello World!  ") == "hello-world"
    assert slugify("!!!") == "project"
    assert len(slugify("x" * 200)) == MAX_SLUG_LENGTH


def test_agent_name_validation_is_case_insensitive():
    assert validate_agent_name_format("AmberFox")
    assert validate_agent_name_format("amberfox")
    assert not validate_agent_name_format("BackendHarmonizer")
    assert not validate_agent_name_format("")


def test_canonical_agent_name_handles_spaces_and_case():
    assert canonical_agent_name("amber fox") == "AmberFox"
    assert canonical_agent_name("JADE-wolf") == "JadeWolf"
    assert canonical_agent_name("Not A Name") is None
    assert canonical_agent_name(None) is None


def test_sanitize_agent_name():
    assert sanitize_agent_name("  Blue_Lake! ") == "BlueLake"
    assert sanitize_agent_name("***") is None


def test_generate_agent_name_draws_from_word_lists():
    name = generate_agent_name(random.Random(7))
    assert any(name.startswith(adj) and name[len(adj):] in NOUNS for adj in ADJECTIVES)


def test_generate_unique_agent_name_is_seed_deterministic():
    assert generate_unique_agent_name([], seed="backend") == generate_unique_agent_name([], seed="backend")


def test_generate_unique_agent_name_avoids_taken_names():
    taken = {generate_agent_name(random.Random("seed"))}
    name = generate_unique_agent_name(taken, seed="seed")
    assert name.lower() not in {t.lower() for t in taken}


def test_generate_unique_agent_name_falls_back_to_suffix():
    every = [f"{adj}{noun}" for adj in ADJECTIVES for noun in NOUNS]
    name = generate_unique_agent_name(every, seed="full")
    assert name[-1].isdigit()
    assert name.endswith("2")
    assert name not in every


def test_suggest_matches_limits_and_ignores_case():
    candidates = ["AmberFox", "AmberWolf", "AmberLake", "AmberOwl", "JadeWolf"]
    assert suggest_matches("amber", candidates) == ["AmberFox", "AmberWolf", "AmberLake"]
    assert suggest_matches("WOLF", candidates) == ["AmberWolf", "JadeWolf"]
    assert suggest_matches("", candidates) == []


def test_iso_utc_treats_naive_as_utc():
    assert iso_utc(datetime(2025, 1, 15, 12, 0, 0)) == "2025-01-15T12:00:00+00:00"
    assert iso_utc(None) is None


def test_parse_iso_naive_normalizes_offsets():
    assert parse_iso_naive("2025-01-15T12:00:00Z") == datetime(2025, 1, 15, 12, 0, 0)
    assert parse_iso_naive("2025-01-15T14:00:00+02:00") == datetime(2025, 1, 15, 12, 0, 0)
    assert parse_iso_naive("2025-01-15T12:00:00").tzinfo is None
    with pytest.raises(ValueError):
        parse_iso_naive("yesterday")


def test_iso_roundtrip_through_aware_datetime():
    aware = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
    assert parse_iso_naive(iso_utc(aware)) == aware.replace(tzinfo=None)
