import hashlib

import pytest

from app.services.seed_manager import (
    MAX_SEED,
    MIN_SEED,
    SeedManager,
    cleanup_temperature_parameters,
    create_cache_key_with_seed,
    extract_seed_from_cache_key,
    normalize_context,
    seed_from_context,
    validate_seed,
)


def test_normalization_is_order_independent_and_formats_floats():
    first = normalize_context({"b": 1.5, "a": None, "c": {"y": 2, "x": 1}})
    second = normalize_context({"c": {"x": 1, "y": 2}, "a": None, "b": 1.5})

    assert first == second
    assert '"b":"1.500000"' in first
    assert '"a":"null"' in first


def test_seed_matches_md5_prefix_formula():
    context = {"region": "lyon", "zoom": 12}
    digest = hashlib.md5(normalize_context(context).encode("utf-8")).hexdigest()
    expected = int(digest[:8], 16) % (MAX_SEED - MIN_SEED + 1) + MIN_SEED

    assert seed_from_context(context) == expected
    assert validate_seed(expected)


def test_same_context_same_seed_and_source():
    manager = SeedManager(base_seed=None, rotation_hours=None)

    first = manager.get_seed({"region": "paris"})
    second = SeedManager(base_seed=None, rotation_hours=None).get_seed({"region": "paris"})

    assert first == second
    assert first.source == "context"


def test_fixed_seed_takes_precedence():
    result = SeedManager(base_seed=42, rotation_hours=6).get_seed({"region": "paris"})
    assert result.seed == 42
    assert result.source == "fixed"


def test_rotation_changes_with_period_only():
    manager = SeedManager(base_seed=None, rotation_hours=1)
    context = {"region": "paris"}

    a = manager.get_seed(context, now=3600 * 10 + 5)
    b = manager.get_seed(context, now=3600 * 10 + 3000)
    c = manager.get_seed(context, now=3600 * 11 + 5)

    assert a.source == "rotated"
    assert a.seed == b.seed
    assert a.seed != c.seed


def test_no_context_generates_seed():
    result = SeedManager(base_seed=None, rotation_hours=None).get_seed(None)
    assert result.source == "generated"
    assert validate_seed(result.seed)


def test_invalid_base_seed_is_rejected():
    with pytest.raises(ValueError):
        SeedManager(base_seed=0)


def test_cache_key_round_trip_and_temperature_cleanup():
    result = SeedManager(base_seed=None, rotation_hours=None).get_seed({"k": "v"})
    key = create_cache_key_with_seed("market|ctx:k=v", result)

    assert key.startswith("market|ctx:k=v|seed-")
    assert f"|src-context|ctx-{result.context_hash[:8]}" in key
    assert extract_seed_from_cache_key(key) == result.seed
    assert extract_seed_from_cache_key("no-seed-here") is None

    params = {"model": "m", "temperature": 0.2}
    assert cleanup_temperature_parameters(params) == {"model": "m"}
    assert params["temperature"] == 0.2


def test_validate_seed_bounds():
    assert validate_seed(MIN_SEED)
    assert validate_seed(MAX_SEED)
    assert not validate_seed(0)
    assert not validate_seed(MAX_SEED + 1)
    assert not validate_seed(True)
    assert not validate_seed("12")
