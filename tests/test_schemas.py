"""Tests for job payload JSON schema validation."""

import pytest
from intel_worker.queue.policies import QueueName
from intel_worker.queue.schemas import PAYLOAD_SCHEMAS, validate_payload


def test_every_queue_has_a_schema():
    assert set(PAYLOAD_SCHEMAS) == set(QueueName)


def test_research_payload_with_optional_fields():
    """Research payload with domain, priority and user_id validates."""
    data = {
        "company_id": "c-42",
        "company_name": "Acme Analytics",
        "domain": "acme.example",
        "priority": "high",
        "user_id": "u-7",
    }
    valid, err = validate_payload(QueueName.RESEARCH, data)
    assert valid, f"Validation failed: {err}"


def test_extra_properties_allowed():
    data = {"contact_id": "p-1", "company_id": "c-1", "source": "csv-import"}
    valid, err = validate_payload(QueueName.ENRICHMENT, data)
    assert valid, f"Validation failed: {err}"


@pytest.mark.parametrize("queue,payload,fragment", [
    (QueueName.RESEARCH, {"company_name": "Acme"}, "company_id"),
    (QueueName.ENRICHMENT, {"contact_id": "p-1", "company_id": 7}, "company_id"),
    (QueueName.REPORTS, {"company_id": "c", "report_type": "yearly", "user_id": "u"}, "report_type"),
    (QueueName.SIGNALS, {"signal_id": "s", "company_id": "c"}, "signal_type"),
])
def test_invalid_payloads_name_the_field(queue, payload, fragment):
    valid, err = validate_payload(queue, payload)
    assert not valid
    assert fragment in err


def test_research_priority_must_be_known():
    valid, _ = validate_payload(QueueName.RESEARCH, {"company_id": "c", "company_name": "n", "priority": "urgent"})
    assert not valid


def test_signal_data_may_be_anything():
    for data in ({"amount": 5}, [1, 2], "text", None):
        valid, err = validate_payload(
            QueueName.SIGNALS, {"signal_id": "s", "signal_type": "hiring", "company_id": "c", "data": data}
        )
        assert valid, f"Validation failed: {err}"


def test_non_object_payload_rejected():
    valid, _ = validate_payload(QueueName.SIGNALS, ["not", "a", "dict"])
    assert not valid
