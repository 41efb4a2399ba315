from __future__ import annotations

from opsuite.services.hashing import canonicalize, compute_payload_hash


def test_hash_ignores_key_order_at_every_depth() -> None:
    left = {"a": 1, "b": {"x": [1, 2], "y": "z"}}
    right = {"b": {"y": "z", "x": [1, 2]}, "a": 1}
    assert canonicalize(left) == canonicalize(right)
    assert compute_payload_hash(left) == compute_payload_hash(right)


def test_hash_preserves_array_order() -> None:
    assert compute_payload_hash({"items": [1, 2]}) != compute_payload_hash({"items": [2, 1]})


def test_capability_changes_the_digest() -> None:
    payload = {"contactId": 7}
    plain = compute_payload_hash(payload)
    sync = compute_payload_hash(payload, "sync")
    assert plain != sync
    assert sync == compute_payload_hash({"contactId": 7}, "sync")
    assert len(sync) == 64


def test_canonical_form_is_compact_and_unicode_safe() -> None:
    assert canonicalize({"b": "é", "a": None}) == '{"a":null,"b":"é"}'
