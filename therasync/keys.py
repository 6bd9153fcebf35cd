"""
therasync — Query Keys.

Every cached result is addressed by a ``QueryKey``: a tuple whose first
element is the resource root (``"clients"``, ``"sessions"`` ...) followed by
ids and sub-resources. List queries may end with a params tuple of sorted
``(name, value)`` pairs, which keeps the key hashable.

Keys are only ever built through the functions below.
"""

from __future__ import annotations

from typing import Any, Hashable

QueryKey = tuple[Hashable, ...]
Params = tuple[tuple[str, Hashable], ...]

# Entity class -> resource root
ENTITY_RESOURCES: dict[str, str] = {
    "client": "clients",
    "therapist": "therapists",
    "session": "sessions",
    "consultation": "consultations",
    "clinic": "clinics",
    "assignment": "assignments",
}

# Default cache tier per key root (first element)
ROOT_TIERS: dict[str, str] = {
    "notifications": "realtime",
    "sessions": "session",
    "consultations": "session",
    "assignments": "session",
    "user": "profile",
    "clients": "profile",
    "therapists": "profile",
    "clinics": "static",
    "analytics": "static",
    "reports": "static",
}


def params(filters: dict[str, Any] | None) -> Params:
    """Freeze a filter mapping into a hashable, order-independent tuple."""
    if not filters:
        return ()
    return tuple(sorted((str(k), _freeze(v)) for k, v in filters.items() if v is not None))


def _freeze(value: Any) -> Hashable:
    if isinstance(value, dict):
        return tuple(sorted((str(k), _freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple, set)):
        return tuple(_freeze(v) for v in value)
    return value


def _list(root: str, filters: dict[str, Any] | None = None) -> QueryKey:
    frozen = params(filters)
    return (root, frozen) if frozen else (root,)


# ─── Auth / User ─────────────────────────────────────────────────────

def user() -> QueryKey:
    return ("user",)


# ─── Clinics ─────────────────────────────────────────────────────────

def clinics(filters: dict[str, Any] | None = None) -> QueryKey:
    return _list("clinics", filters)


def clinic(clinic_id: str) -> QueryKey:
    return ("clinics", clinic_id)


def clinic_profile(clinic_id: str) -> QueryKey:
    return ("clinics", clinic_id, "profile")


def clinic_documents(clinic_id: str) -> QueryKey:
    return ("clinics", clinic_id, "documents")


def clinic_analytics(clinic_id: str) -> QueryKey:
    return ("clinics", clinic_id, "analytics")


# ─── Therapists ──────────────────────────────────────────────────────

def therapists(filters: dict[str, Any] | None = None) -> QueryKey:
    return _list("therapists", filters)


def therapist(therapist_id: str) -> QueryKey:
    return ("therapists", therapist_id)


def therapist_profile(therapist_id: str) -> QueryKey:
    return ("therapists", therapist_id, "profile")


def therapist_specializations(therapist_id: str) -> QueryKey:
    return ("therapists", therapist_id, "specializations")


def therapist_availability(therapist_id: str) -> QueryKey:
    return ("therapists", therapist_id, "availability")


def therapist_sessions(therapist_id: str) -> QueryKey:
    return ("therapists", therapist_id, "sessions")


def therapist_consultations(therapist_id: str) -> QueryKey:
    return ("therapists", therapist_id, "consultations")


def therapist_assignments(therapist_id: str) -> QueryKey:
    return ("therapists", therapist_id, "assignments")


# ─── Clients ─────────────────────────────────────────────────────────

def clients(filters: dict[str, Any] | None = None) -> QueryKey:
    return _list("clients", filters)


def client(client_id: str) -> QueryKey:
    return ("clients", client_id)


def client_profile(client_id: str) -> QueryKey:
    return ("clients", client_id, "profile")


def client_sessions(client_id: str) -> QueryKey:
    return ("clients", client_id, "sessions")


def client_consultations(client_id: str) -> QueryKey:
    return ("clients", client_id, "consultations")


def client_assignments(client_id: str) -> QueryKey:
    return ("clients", client_id, "assignments")


# ─── Sessions / Consultations / Assignments ──────────────────────────

def sessions(filters: dict[str, Any] | None = None) -> QueryKey:
    return _list("sessions", filters)


def session(session_id: str) -> QueryKey:
    return ("sessions", session_id)


def upcoming_sessions() -> QueryKey:
    return ("sessions", "upcoming")


def consultations(filters: dict[str, Any] | None = None) -> QueryKey:
    return _list("consultations", filters)


def consultation(consultation_id: str) -> QueryKey:
    return ("consultations", consultation_id)


def assignments(filters: dict[str, Any] | None = None) -> QueryKey:
    return _list("assignments", filters)


def assignment(assignment_id: str) -> QueryKey:
    return ("assignments", assignment_id)


# ─── Notifications / Reports / Analytics ─────────────────────────────

def notifications() -> QueryKey:
    return ("notifications",)


def unread_notifications() -> QueryKey:
    return ("notifications", "unread")


def reports() -> QueryKey:
    return ("reports",)


def analytics() -> QueryKey:
    return ("analytics",)


def therapist_analytics(therapist_id: str) -> QueryKey:
    return ("analytics", "therapist", therapist_id)


# ─── Generic helpers ─────────────────────────────────────────────────

def resource_for(entity_class: str) -> str:
    """Resource root for an entity class. Raises KeyError when unknown."""
    return ENTITY_RESOURCES[entity_class]


def entity_key(entity_class: str, entity_id: str) -> QueryKey:
    return (resource_for(entity_class), entity_id)


def list_key(entity_class: str) -> QueryKey:
    return (resource_for(entity_class),)


def matches_prefix(key: QueryKey, prefix: QueryKey) -> bool:
    """True when *key* starts with every element of *prefix*."""
    return len(key) >= len(prefix) and key[: len(prefix)] == prefix


def is_list_variant(key: QueryKey, base: QueryKey) -> bool:
    """True for *base* itself or *base* followed by a params tuple."""
    if key == base:
        return True
    return (
        len(key) == len(base) + 1
        and key[: len(base)] == base
        and isinstance(key[-1], tuple)
    )


def key_tier(key: QueryKey) -> str:
    """Default cache tier for a key, derived from its root."""
    if key[:2] == ("notifications", "unread"):
        return "critical"
    if not key:
        return "session"
    return ROOT_TIERS.get(str(key[0]), "session")


def key_to_str(key: QueryKey) -> str:
    """Human readable rendering used in logs and the CLI."""
    parts = []
    for part in key:
        if isinstance(part, tuple):
            parts.append("?" + "&".join(f"{k}={v}" for k, v in part))
        else:
            parts.append(str(part))
    return "/".join(parts)
