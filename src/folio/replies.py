"""JSON reply builder for tool responses.

Success: ``{"ok": true, "manifestUrl": ..., <counts>, "hints": {...}}``.
Failure: ``{"ok": false, "error": ..., "hints": {...}}``.

Result dataclasses are flattened with their snake_case fields renamed to
the camelCase the manifest uses on the wire.
"""

from __future__ import annotations

import dataclasses
import json
from typing import Any

# Every mutating reply reminds the caller to switch addresses.
NEXT_ADDRESS_HINT = "Use manifestUrl from this reply for the next call; the old address may be stale."


def camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


def _wire(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        if hasattr(value, "to_dict"):
            return value.to_dict()
        return {camel(f.name): _wire(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {k: _wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_wire(v) for v in value]
    return value


def ok(result: Any = None, hints: dict[str, str] | None = None, **extra: Any) -> str:
    """Serialize a successful result (dataclass, dict or nothing) plus extra fields."""
    data: dict[str, Any] = {"ok": True}
    if result is not None:
        data.update(_wire(result))
    data.update({camel(k): _wire(v) for k, v in extra.items()})
    hints = dict(hints or {})
    if "manifestUrl" in data:
        hints.setdefault("next", NEXT_ADDRESS_HINT)
    if hints:
        data["hints"] = hints
    return json.dumps(data, indent=2, ensure_ascii=False)


def error(message: str, hints: dict[str, str] | None = None) -> str:
    data: dict[str, Any] = {"ok": False, "error": message}
    if hints:
        data["hints"] = hints
    return json.dumps(data, indent=2, ensure_ascii=False)
