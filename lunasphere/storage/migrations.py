"""
One-time migration of legacy user documents.

Older deployments stored users with camelCase keys, a `password` field and
either a single `role` string or a `roles` array. This converts them to the
current UserRecord layout so no runtime fallback is needed.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

LEGACY_KEYS = ("password", "role", "registeredAt", "accountStatus", "lastLogin")

FIELD_RENAMES = {
    "password": "password_hash",
    "accountStatus": "account_status",
    "registeredAt": "registered_at",
    "lastLogin": "last_login",
    "visitCount": "visit_count",
    "assignedBy": "assigned_by",
    "roleAssignedAt": "role_assigned_at",
    "createdFrom": "created_from",
}


def is_legacy_user_document(doc: Dict[str, Any]) -> bool:
    return any(key in doc for key in LEGACY_KEYS)


def migrate_user_document(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Return the current-format equivalent of one legacy user document."""
    if not is_legacy_user_document(doc):
        return dict(doc)

    migrated: Dict[str, Any] = {}
    for key, value in doc.items():
        if key in ("role", "roles", "id"):
            continue
        migrated[FIELD_RENAMES.get(key, key)] = value

    roles = doc.get("roles")
    if isinstance(roles, str):
        roles = [roles]
    if not roles:
        roles = [doc.get("role") or "user"]
    migrated["roles"] = roles

    now = datetime.now(timezone.utc).isoformat()
    migrated.setdefault("registered_at", now)
    migrated.setdefault("role_assigned_at", migrated["registered_at"])
    migrated.setdefault("account_status", "active")
    migrated.setdefault("assigned_by", "system")
    migrated.setdefault("visit_count", 0)
    if migrated["account_status"] not in ("active", "disabled"):
        migrated["account_status"] = "disabled"
    return migrated


def migrate_user_documents(docs: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], int]:
    """Migrate a whole users.json payload. Returns (documents, number changed)."""
    changed = 0
    result = []
    for doc in docs:
        if is_legacy_user_document(doc):
            changed += 1
        result.append(migrate_user_document(doc))
    return result, changed
