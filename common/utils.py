import datetime
import decimal
import uuid

from core.models import OutboxEvent


def _to_json_compatible(value):
    if isinstance(value, dict):
        return {key: _to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_json_compatible(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime, datetime.time)):
        return value.isoformat()
    return value


def emit_outbox(topic, entity, entity_id, op, payload):
    """Queue a change notification for pull-based consumers (one row per changed record)."""
    envelope = {
        "entity": entity,
        "op": op,
        "entity_id": str(entity_id),
        "topic": topic,
        "payload": _to_json_compatible(dict(payload or {})),
    }

    return OutboxEvent.objects.create(
        topic=topic or "",
        entity=entity,
        entity_id=entity_id,
        op=op,
        payload=envelope,
    )
