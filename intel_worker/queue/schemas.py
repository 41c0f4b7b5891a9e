"""JSON Schema validation for job payloads.

Each queue accepts one payload shape; enqueue rejects anything else before
the queue is touched.
"""

from typing import Any, Tuple

from jsonschema import Draft7Validator

from .policies import QueueName


_NON_EMPTY_STRING = {"type": "string", "minLength": 1}
_OPTIONAL_STRING = {"type": ["string", "null"]}
_PRIORITY = {"type": ["string", "null"], "enum": ["low", "normal", "high", None]}


RESEARCH_SCHEMA = {
    "type": "object",
    "required": ["company_id", "company_name"],
    "properties": {
        "company_id": _NON_EMPTY_STRING,
        "company_name": _NON_EMPTY_STRING,
        "domain": _OPTIONAL_STRING,
        "priority": _PRIORITY,
        "user_id": _OPTIONAL_STRING,
    },
    "additionalProperties": True
}


ENRICHMENT_SCHEMA = {
    "type": "object",
    "required": ["contact_id", "company_id"],
    "properties": {
        "contact_id": _NON_EMPTY_STRING,
        "company_id": _NON_EMPTY_STRING,
        "linkedin_url": _OPTIONAL_STRING,
        "email": _OPTIONAL_STRING,
        "priority": _PRIORITY,
    },
    "additionalProperties": True
}


REPORT_SCHEMA = {
    "type": "object",
    "required": ["company_id", "report_type", "user_id"],
    "properties": {
        "company_id": _NON_EMPTY_STRING,
        "report_type": {"type": "string", "enum": ["weekly", "monthly", "quarterly"]},
        "user_id": _NON_EMPTY_STRING,
        "email_to": _OPTIONAL_STRING,
    },
    "additionalProperties": True
}


SIGNAL_SCHEMA = {
    "type": "object",
    "required": ["signal_id", "signal_type", "company_id"],
    "properties": {
        "signal_id": _NON_EMPTY_STRING,
        "signal_type": _NON_EMPTY_STRING,
        "company_id": _NON_EMPTY_STRING,
        "data": {},
    },
    "additionalProperties": True
}


PAYLOAD_SCHEMAS: dict[QueueName, dict] = {
    QueueName.RESEARCH: RESEARCH_SCHEMA,
    QueueName.ENRICHMENT: ENRICHMENT_SCHEMA,
    QueueName.REPORTS: REPORT_SCHEMA,
    QueueName.SIGNALS: SIGNAL_SCHEMA,
}

_VALIDATORS = {name: Draft7Validator(schema) for name, schema in PAYLOAD_SCHEMAS.items()}


def validate_payload(queue: QueueName, payload: Any) -> Tuple[bool, str]:
    """
    Validate a job payload against its queue's schema.

    Args:
        queue: Queue the payload is destined for
        payload: Payload data to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    validator = _VALIDATORS[QueueName(queue)]
    error = next(iter(sorted(validator.iter_errors(payload), key=lambda e: list(e.path))), None)
    if error is None:
        return True, ""

    location = ".".join(str(part) for part in error.path)
    if location:
        return False, f"{location}: {error.message}"
    return False, str(error.message)
