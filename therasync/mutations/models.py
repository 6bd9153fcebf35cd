"""Mutation data classes and request model."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from therasync.cache.models import Entry
from therasync.keys import ENTITY_RESOURCES, QueryKey


class MutationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MutationState(str, Enum):
    IDLE = "idle"
    STAGED = "staged"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class MutationRequest(BaseModel):
    """What the mutate collaborator receives."""
    kind: MutationKind
    entity_class: str = Field(..., description="client, therapist, session, consultation, ...")
    entity_id: str | None = Field(None, description="Target id; None for create")
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("entity_class")
    @classmethod
    def known_class(cls, v: str) -> str:
        if v not in ENTITY_RESOURCES:
            raise ValueError(f"Unknown entity class: {v}")
        return v

    @model_validator(mode="after")
    def id_required(self) -> "MutationRequest":
        if self.kind is not MutationKind.CREATE and not self.entity_id:
            raise ValueError(f"{self.kind.value} requires an entity_id")
        return self


@dataclass
class OptimisticUpdate:
    """Undo record for one staged mutation.

    ``original_snapshot`` is the entity entry as it was at staging time
    (None when absent). ``list_snapshots`` holds the same for every list
    entry the staging patched.
    """
    id: str
    kind: MutationKind
    entity_class: str
    entity_id: str
    entity_key: QueryKey
    timestamp: int
    stage_token: int
    original_snapshot: Entry | None = None
    tentative_data: Any = None
    list_snapshots: dict[QueryKey, Entry | None] = field(default_factory=dict)
    state: MutationState = MutationState.STAGED

    @property
    def is_terminal(self) -> bool:
        return self.state in (MutationState.COMMITTED, MutationState.ROLLED_BACK)
