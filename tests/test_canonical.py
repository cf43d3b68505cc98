from __future__ import annotations

from runops.services.canonical import canonicalize, payload_hash


def test_key_order_does_not_change_canonical_form() -> None:
    left = {"title": "Picker", "description": "Day shift", "meta": {"b": 1, "a": [2, 1]}}
    right = {"meta": {"a": [2, 1], "b": 1}, "description": "Day shift", "title": "Picker"}

    assert canonicalize(left) == canonicalize(right)
    assert payload_hash(left) == payload_hash(right)


def test_sequence_order_is_significant() -> None:
    assert payload_hash({"tags": ["a", "b"]}) != payload_hash({"tags": ["b", "a"]})


def test_canonical_form_is_compact_and_keeps_non_ascii() -> None:
    assert canonicalize({"b": "倉庫", "a": None, "c": True}) == '{"a":null,"b":"倉庫","c":true}'


def test_hash_is_lowercase_sha256_hex() -> None:
    digest = payload_hash({})
    assert len(digest) == 64
    assert digest == digest.lower()
    assert digest == payload_hash({})


def test_value_changes_change_the_hash() -> None:
    assert payload_hash({"title": "Picker"}) != payload_hash({"title": "Picker "})
