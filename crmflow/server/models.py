"""Pydantic request models for the CrmFlow API."""

from typing import Annotated, Any, Dict, Optional

from pydantic import AfterValidator, BaseModel, Field

from ..models import ENTITY_TYPES


def _known_entity_type(value: str) -> str:
    if value not in ENTITY_TYPES:
        raise ValueError(f"entity_type must be one of {', '.join(ENTITY_TYPES)}")
    return value


EntityType = Annotated[str, AfterValidator(_known_entity_type)]


class DryRunRequest(BaseModel):
    entity_type: EntityType
    entity_id: str


class TriggerEventRequest(BaseModel):
    trigger_type: str = Field(min_length=1)
    entity_type: EntityType
    entity_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    previous_data: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
