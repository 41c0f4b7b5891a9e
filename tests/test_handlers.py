"""Tests for the HTTP intelligence service adapter and handler wiring."""

import json

import httpx
import pytest

from intel_worker.queue import HandlerFailure, HttpIntelligenceService, QueueName, build_handlers
from intel_worker.queue.job_queue import Job, utcnow


def make_service(handler, token="svc-token"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpIntelligenceService("http://intel.test/api/intelligence/", service_token=token, client=client)


@pytest.mark.asyncio
async def test_research_posts_payload_with_bearer_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"overall_score": 82})

    service = make_service(handler)
    progress = []
    result = await service.run_research({"company_id": "c-1", "company_name": "Acme"}, progress.append)

    assert result == {"overall_score": 82}
    assert seen["url"] == "http://intel.test/api/intelligence/research"
    assert seen["auth"] == "Bearer svc-token"
    assert seen["body"]["company_name"] == "Acme"
    assert progress == [10, 100]


@pytest.mark.asyncio
async def test_no_authorization_header_without_token():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={})

    service = make_service(handler, token="")
    await service.run_signal({"signal_id": "s", "signal_type": "funding", "company_id": "c"}, lambda p: None)
    assert seen["auth"] is None


@pytest.mark.asyncio
async def test_error_status_raises_handler_failure():
    service = make_service(lambda request: httpx.Response(503, text="maintenance"))

    with pytest.raises(HandlerFailure) as exc:
        await service.run_report({"company_id": "c", "report_type": "weekly", "user_id": "u"}, lambda p: None)
    assert exc.value.details == {"http_status": 503}
    assert "503" in exc.value.message


@pytest.mark.asyncio
async def test_transport_error_raises_handler_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    service = make_service(handler)
    with pytest.raises(HandlerFailure):
        await service.run_enrichment({"contact_id": "p", "company_id": "c"}, lambda p: None)


@pytest.mark.asyncio
async def test_non_json_body_raises_handler_failure():
    service = make_service(lambda request: httpx.Response(200, text="<html>oops</html>"))
    with pytest.raises(HandlerFailure):
        await service.research_item("p-1")


@pytest.mark.asyncio
async def test_lookup_items_keys_by_id():
    def handler(request):
        assert request.url.params["ids"] == "p-1,p-2"
        return httpx.Response(200, json={"items": [
            {"id": "p-1", "title": "VP People"},
            {"id": 2, "title": "Engineer"},
            {"title": "no id"},
        ]})

    service = make_service(handler)
    items = await service.lookup_items(["p-1", "p-2"])
    assert items == {"p-1": {"id": "p-1", "title": "VP People"}, "2": {"id": 2, "title": "Engineer"}}


@pytest.mark.asyncio
async def test_close_leaves_injected_client_open():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
    service = HttpIntelligenceService("http://intel.test", client=client)
    await service.close()
    assert not client.is_closed
    await client.aclose()


@pytest.mark.asyncio
async def test_build_handlers_dispatch_by_queue():
    calls = []

    class Service:
        async def run_research(self, payload, progress):
            progress(30)
            calls.append("research")
            return {"ok": "research"}

        async def run_enrichment(self, payload, progress):
            return {"ok": "enrichment"}

        async def run_report(self, payload, progress):
            return {"ok": "reports"}

        async def run_signal(self, payload, progress):
            return {"ok": "signals"}

    handlers = build_handlers(Service())
    assert set(handlers) == set(QueueName)

    job = Job(id="research_1", queue=QueueName.RESEARCH, payload={"company_id": "c"}, created_at=utcnow())
    assert await handlers[QueueName.RESEARCH](job) == {"ok": "research"}
    assert job.progress == 30
    assert await handlers[QueueName.SIGNALS](job) == {"ok": "signals"}
