"""
Activity Log Helpers

Builds audit-trail entries for create/update/delete/session actions and
computes the shallow before/after diff shown alongside update records.
Entries are plain dictionaries matching the ``activity_logs`` columns so the
database layer can insert them directly.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Columns that must never reach an audit snapshot
SENSITIVE_FIELDS = frozenset({"password", "password_hash"})

ACTIVITY_ICONS = {
    "create": "📝",
    "update": "✏️",
    "delete": "🗑️",
    "login": "🔐",
    "logout": "👋",
    "upload": "📤",
    "download": "📥",
    "share": "📤",
    "comment": "💬",
    "approve": "✅",
    "reject": "❌",
    "complete": "🏁",
    "start": "🚀",
    "pause": "⏸️",
    "resume": "▶️",
}
DEFAULT_ACTIVITY_ICON = "📋"


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def sanitize_snapshot(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy an entity row for auditing, dropping credential columns."""
    if values is None:
        return None
    return {k: v for k, v in values.items() if k not in SENSITIVE_FIELDS}


def compute_changes(old_values: Any, new_values: Any) -> Dict[str, Dict[str, Any]]:
    """
    Shallow diff between two JSON objects.

    Every top-level key present in either snapshot is compared by its
    canonical JSON form; keys whose values differ map to ``{"old", "new"}``.
    A missing key reads as ``None``. Anything other than a dict is treated
    as an empty object.
    """
    old = old_values if isinstance(old_values, dict) else {}
    new = new_values if isinstance(new_values, dict) else {}

    changes: Dict[str, Dict[str, Any]] = {}
    for key in list(old.keys()) + [k for k in new.keys() if k not in old]:
        before = old.get(key)
        after = new.get(key)
        if _canonical(before) != _canonical(after):
            changes[key] = {"old": before, "new": after}
    return changes


def get_activity_icon(action: str) -> str:
    return ACTIVITY_ICONS.get(action, DEFAULT_ACTIVITY_ICON)


def format_activity_description(entry: Dict[str, Any]) -> str:
    """Human-readable one-liner for the activity feed."""
    action = entry.get("action", "")
    description = entry.get("description", "")
    icon = get_activity_icon(action)

    if action == "update":
        changes = compute_changes(entry.get("old_values"), entry.get("new_values"))
        if changes:
            parts = [f"{key}: {c['old']} → {c['new']}" for key, c in changes.items()]
            return f"{icon} {description} ({', '.join(parts)})"
    return f"{icon} {description}"


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_entry(
    action: str,
    entity_type: str,
    entity_id: Any,
    description: str,
    actor: Optional[Dict[str, Any]] = None,
    client: Optional[Dict[str, Optional[str]]] = None,
    old_values: Optional[Dict[str, Any]] = None,
    new_values: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Assemble an activity-log row.

    Args:
        action: Verb recorded (create, update, delete, login, ...)
        entity_type: Kind of entity affected (project, task, user, ...)
        entity_id: Identifier of the affected entity
        description: Display text
        actor: User performing the action (``id`` and ``name`` are used)
        client: Request details with ``ip_address`` and ``user_agent``
        old_values: Snapshot before the change
        new_values: Snapshot after the change
        metadata: Extra JSON data; a ``timestamp`` is always stamped

    Returns:
        Dict ready for ``ProjectDatabase.add_activity``
    """
    actor = actor or {}
    client = client or {}
    stamped = dict(metadata or {})
    stamped.setdefault("timestamp", _utc_now())
    return {
        "action": action,
        "description": description,
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "user_id": str(actor["id"]) if actor.get("id") is not None else "system",
        "user_name": actor.get("name"),
        "ip_address": client.get("ip_address"),
        "user_agent": client.get("user_agent"),
        "old_values": sanitize_snapshot(old_values),
        "new_values": sanitize_snapshot(new_values),
        "metadata": stamped,
    }


def creation_entry(entity_type: str, entity: Dict[str, Any], label: str,
                   actor=None, client=None) -> Dict[str, Any]:
    return build_entry(
        "create", entity_type, entity["id"],
        f"Created {entity_type} '{label}'",
        actor=actor, client=client, new_values=entity,
    )


def update_entry(entity_type: str, before: Dict[str, Any], after: Dict[str, Any],
                 label: str, actor=None, client=None) -> Optional[Dict[str, Any]]:
    """Update record with the field diff, or None when nothing changed."""
    changes = compute_changes(sanitize_snapshot(before), sanitize_snapshot(after))
    # Bookkeeping columns alone do not count as a change
    changes.pop("updated_at", None)
    if not changes:
        return None
    return build_entry(
        "update", entity_type, before["id"],
        f"Updated {entity_type} '{label}': {', '.join(changes)}",
        actor=actor, client=client,
        old_values=before, new_values=after,
        metadata={"changes": changes},
    )


def deletion_entry(entity_type: str, entity: Dict[str, Any], label: str,
                   actor=None, client=None, metadata=None) -> Dict[str, Any]:
    return build_entry(
        "delete", entity_type, entity["id"],
        f"Deleted {entity_type} '{label}'",
        actor=actor, client=client, old_values=entity, metadata=metadata,
    )


def session_entry(kind: str, user: Dict[str, Any], client=None) -> Dict[str, Any]:
    """Login/logout record reported by the identity provider."""
    text = "User signed in" if kind == "login" else "User signed out"
    return build_entry(
        kind, "user", user["id"], text,
        actor=user, client=client,
        metadata={"ip": (client or {}).get("ip_address"),
                  "user_agent": (client or {}).get("user_agent")},
    )
