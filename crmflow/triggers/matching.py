"""Trigger-config matching - does an event fit an automation's trigger filters?"""

from typing import Any, Dict, Optional

from ..models import TriggerEvent


def _norm(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def matches_trigger_config(trigger_config: Dict[str, Any], event: TriggerEvent) -> bool:
    """Check an event against the automation's trigger_config filters.

    Supported keys: entity_type, field_name / to_value (field.changed),
    from_stage / to_stage (opportunity.stage_changed), from_status /
    to_status (rfp.status_changed), disposition (call.dispositioned),
    direction, sequence_id (event metadata), meeting_type, outcome.

    A mismatch is a silent skip: no execution is recorded.
    """
    config = trigger_config or {}
    data = event.data or {}
    previous = event.previous_data or {}

    entity_type = config.get("entity_type")
    if entity_type and entity_type != event.entity_type:
        return False

    if event.trigger_type == "field.changed" and config.get("field_name"):
        field_name = config["field_name"]
        current = _norm(data.get(field_name))
        # Field must have actually changed
        if current == _norm(previous.get(field_name)):
            return False
        if "to_value" in config and current != _norm(config["to_value"]):
            return False

    if event.trigger_type == "opportunity.stage_changed":
        if config.get("from_stage") and _norm(previous.get("stage")) != config["from_stage"]:
            return False
        if config.get("to_stage") and _norm(data.get("stage")) != config["to_stage"]:
            return False

    if event.trigger_type == "rfp.status_changed":
        if config.get("from_status") and _norm(previous.get("status")) != config["from_status"]:
            return False
        if config.get("to_status") and _norm(data.get("status")) != config["to_status"]:
            return False

    if event.trigger_type == "call.dispositioned" and config.get("disposition"):
        if data.get("disposition") != config["disposition"]:
            return False

    if config.get("direction") and data.get("direction") != config["direction"]:
        return False
    if config.get("sequence_id") and (event.metadata or {}).get("sequence_id") != config["sequence_id"]:
        return False
    if config.get("meeting_type") and data.get("meeting_type") != config["meeting_type"]:
        return False
    if config.get("outcome") and data.get("outcome") != config["outcome"]:
        return False

    return True
