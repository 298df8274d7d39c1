import httpx

from dispatch.infrastructure.prescriptions import PrescriptionClient

def _client(handler):
    return PrescriptionClient("http://prescriptions.test/", transport=httpx.MockTransport(handler))

def test_reads_status():
    def handler(request):
        assert request.url.path == "/prescriptions/rx-1"
        return httpx.Response(200, json={"id": "rx-1", "status": "processed"})

    assert _client(handler).get_status("rx-1") == "processed"

def test_missing_prescription_is_unknown():
    assert _client(lambda request: httpx.Response(404, json={"detail": "not found"})).get_status("rx-1") is None

def test_unreachable_service_is_unknown():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert _client(handler).get_status("rx-1") is None

def test_garbage_body_is_unknown():
    assert _client(lambda request: httpx.Response(200, text="<html>")).get_status("rx-1") is None
