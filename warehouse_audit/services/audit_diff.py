from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

SENSITIVE_FIELDS = frozenset(
    {
        'password',
        'passwordHash',
        'token',
        'accessToken',
        'refreshToken',
        'apiKey',
        'secret',
        'creditCard',
        'ssn',
    }
)

MAX_VALUE_CHARS = 500
MAX_LIST_ITEMS = 20
MAX_CHANGES_BYTES = 5000
TRUNCATED_SUFFIX = '...[truncated]'

_COMPOSITE_TYPES = (Mapping, list, tuple, set, frozenset)


def _normalize_field_name(name: str) -> str:
    return name.replace('_', '').replace('-', '').lower()


_SENSITIVE_NORMALIZED = frozenset(_normalize_field_name(name) for name in SENSITIVE_FIELDS)


class _Absent:
    def __repr__(self) -> str:
        return 'ABSENT'


ABSENT: Any = _Absent()


@dataclass(frozen=True)
class FieldChange:
    before: Any = ABSENT
    after: Any = ABSENT

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.before is not ABSENT:
            payload['from'] = self.before
        if self.after is not ABSENT:
            payload['to'] = self.after
        return payload


def is_sensitive_field(name: str) -> bool:
    return _normalize_field_name(str(name)) in _SENSITIVE_NORMALIZED


def filter_sensitive(data: Mapping[str, Any] | None) -> dict[str, Any]:
    if not data:
        return {}
    filtered: dict[str, Any] = {}
    for key, value in data.items():
        if is_sensitive_field(key):
            continue
        if isinstance(value, Mapping):
            value = filter_sensitive(value)
        filtered[key] = value
    return filtered


def truncate_value(value: Any, *, max_chars: int = MAX_VALUE_CHARS, max_items: int = MAX_LIST_ITEMS) -> Any:
    if isinstance(value, str) and len(value) > max_chars:
        return value[:max_chars] + TRUNCATED_SUFFIX
    if isinstance(value, (list, tuple)) and len(value) > max_items:
        return [*value[:max_items], f'...[{len(value) - max_items} more items]']
    return value


def to_json_safe(value: Any) -> Any:
    """Round-trip through JSON so the value can be stored in a JSON column."""
    return json.loads(serialize_changes(value))


def serialize_changes(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


def _canonical(value: Any) -> str:
    if isinstance(value, (set, frozenset)):
        value = sorted(value, key=repr)
    return json.dumps(value, default=str, sort_keys=True)


def values_differ(old: Any, new: Any) -> bool:
    if old is ABSENT or new is ABSENT:
        return old is not new
    if isinstance(old, _COMPOSITE_TYPES) or isinstance(new, _COMPOSITE_TYPES):
        return _canonical(old) != _canonical(new)
    if type(old) is not type(new):
        return True
    return old != new


def _snapshot(state: Mapping[str, Any], *, max_chars: int, max_items: int) -> dict[str, Any] | None:
    snapshot = {
        key: truncate_value(value, max_chars=max_chars, max_items=max_items)
        for key, value in filter_sensitive(state).items()
    }
    return snapshot or None


def compute_changes(
    old_state: Mapping[str, Any] | None,
    new_state: Mapping[str, Any] | None,
    *,
    max_chars: int = MAX_VALUE_CHARS,
    max_items: int = MAX_LIST_ITEMS,
) -> dict[str, Any] | None:
    if old_state is None and new_state is None:
        return None
    if old_state is None:
        return _snapshot(new_state, max_chars=max_chars, max_items=max_items)
    if new_state is None:
        return _snapshot(old_state, max_chars=max_chars, max_items=max_items)

    changes: dict[str, Any] = {}
    keys = list(dict.fromkeys([*old_state.keys(), *new_state.keys()]))
    for key in keys:
        if is_sensitive_field(key):
            continue
        before = old_state.get(key, ABSENT)
        after = new_state.get(key, ABSENT)
        if isinstance(before, Mapping):
            before = filter_sensitive(before)
        if isinstance(after, Mapping):
            after = filter_sensitive(after)
        if not values_differ(before, after):
            continue
        change = FieldChange(
            before=before if before is ABSENT else truncate_value(before, max_chars=max_chars, max_items=max_items),
            after=after if after is ABSENT else truncate_value(after, max_chars=max_chars, max_items=max_items),
        )
        changes[key] = change.to_dict()
    return changes or None


def build_change_payload(
    old_state: Mapping[str, Any] | None,
    new_state: Mapping[str, Any] | None,
    *,
    max_bytes: int = MAX_CHANGES_BYTES,
) -> dict[str, Any] | None:
    """Diff two snapshots into a JSON-safe payload bounded by ``max_bytes``.

    Returns ``None`` when nothing changed. An oversized diff is replaced by a
    ``{"truncated": True, "size": n}`` placeholder so the entry still exists.
    """
    changes = compute_changes(old_state, new_state)
    if changes is None:
        return None
    serialized = serialize_changes(changes)
    size = len(serialized.encode('utf-8'))
    if size > max_bytes:
        return {'truncated': True, 'size': size}
    return json.loads(serialized)
