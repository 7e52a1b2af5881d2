from __future__ import annotations

import base64

import httpx
import pytest
from fastapi.testclient import TestClient

from api.config import Settings
from api.main import create_app, parse_ratio, parse_threshold
from tests.conftest import API_KEY, FakeModelService, make_png

HEADERS = {"x-api-key": API_KEY}
DETECT = "/ai/vision/person-detect"

PERSON = [{"label": "person", "score": 0.9, "box": {"xmin": 0.1, "ymin": 0.1, "xmax": 0.5, "ymax": 0.5}}]


def client_for(settings, service=None, transport=None, recorder=None) -> TestClient:
    app = create_app(settings=settings, service=service or FakeModelService(result=[]), fetch_transport=transport, recorder=recorder)
    return TestClient(app)


def image_transport(content: bytes, content_type: str = "image/png"):
    return httpx.MockTransport(lambda req: httpx.Response(200, content=content, headers={"content-type": content_type}))


# --- auth -----------------------------------------------------------------------


def test_unconfigured_key_is_401():
    settings = Settings(api_key="", _env_file=None)
    resp = client_for(settings).post("/ai/run", json={"model": "m"}, headers={"x-api-key": "anything"})

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "UNAUTHORIZED"
    assert resp.json()["error"]["message"] == "API key is not configured"


def test_missing_header_is_401(settings):
    resp = client_for(settings).post("/ai/run", json={"model": "m"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "x-api-key header is required"


def test_wrong_key_is_403(settings):
    resp = client_for(settings).post("/ai/run", json={"model": "m"}, headers={"x-api-key": "nope"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "FORBIDDEN"


def test_docs_are_public(settings):
    client = client_for(settings)
    assert client.get("/openapi.json").status_code == 200
    assert client.get("/docs").status_code == 200
    assert client.get("/health").json() == {"status": "ok"}


def test_trace_id_header_is_echoed(settings):
    resp = client_for(settings).post("/ai/run", json={"model": "m"}, headers={"x-request-id": "req-42"})
    assert resp.json()["error"]["traceId"] == "req-42"


def test_generated_trace_id(settings):
    resp = client_for(settings).post("/ai/run", json={"model": "m"})
    assert len(resp.json()["error"]["traceId"]) == 32


# --- /ai/run --------------------------------------------------------------------


def test_run_passthrough_json(settings):
    payload = {"result": {"response": "hello"}, "success": True, "errors": [], "messages": []}
    service = FakeModelService(result=payload)

    resp = client_for(settings, service).post(
        "/ai/run", json={"model": "@cf/meta/llama-3.1-8b-instruct", "input": {"prompt": "hi"}}, headers=HEADERS
    )

    assert resp.status_code == 200
    assert resp.json() == payload
    assert service.calls[0]["input"] == {"prompt": "hi"}


def test_run_binary_result(settings):
    resp = client_for(settings, FakeModelService(result=b"\x89PNGdata")).post(
        "/ai/run", json={"model": "@cf/bytedance/stable-diffusion-xl-lightning"}, headers=HEADERS
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/octet-stream"
    assert resp.content == b"\x89PNGdata"


def test_run_missing_model_is_invalid_input(settings):
    resp = client_for(settings).post("/ai/run", json={"input": {}}, headers=HEADERS)

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "INVALID_INPUT"
    assert body["error"]["cause"]["name"] == "RequestValidationError"


def test_run_empty_model_is_invalid_input(settings):
    resp = client_for(settings).post("/ai/run", json={"model": ""}, headers=HEADERS)
    assert resp.status_code == 400


def test_run_upstream_error_payload(settings):
    payload = {"success": False, "errors": [{"code": 5007, "message": "No such model"}]}

    resp = client_for(settings, FakeModelService(result=payload)).post("/ai/run", json={"model": "x"}, headers=HEADERS)

    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "AI_RUN_RESPONSE_ERROR"
    assert resp.json()["error"]["raw"] == payload


def test_run_timeout(settings):
    service = FakeModelService(result={}, delay=1.0)

    resp = client_for(settings, service).post(
        "/ai/run", json={"model": "x", "options": {"timeoutMs": 20}}, headers=HEADERS
    )

    assert resp.status_code == 504
    assert resp.json()["error"]["code"] == "AI_RUN_TIMEOUT"
    assert resp.json()["error"]["durationMs"] >= 15


def test_run_exception(settings):
    resp = client_for(settings, FakeModelService(exc=RuntimeError("kaput"))).post(
        "/ai/run", json={"model": "x"}, headers=HEADERS
    )

    assert resp.status_code == 500
    assert resp.json()["error"]["cause"] == {"name": "RuntimeError", "message": "kaput"}


# --- person detection: JSON -----------------------------------------------------


def test_detect_by_url_small_box(settings):
    client = client_for(settings, FakeModelService(result=PERSON), transport=image_transport(make_png()))

    resp = client.post(DETECT, json={"url": "https://img.test/a.png", "threshold": 0.7, "minAreaRatio": 0.2}, headers=HEADERS)

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "isPerson": False}


def test_detect_by_url_lower_ratio(settings):
    client = client_for(settings, FakeModelService(result=PERSON), transport=image_transport(make_png()))

    resp = client.post(DETECT, json={"url": "https://img.test/a.png", "minAreaRatio": 0.1}, headers=HEADERS)

    assert resp.json() == {"success": True, "isPerson": True}


def test_detect_vision_model(settings):
    service = FakeModelService(result={"result": {"response": 'Sure thing! {"isPerson": true} - done.'}})
    client = client_for(settings, service, transport=image_transport(make_png(), "application/octet-stream"))

    resp = client.post(
        DETECT,
        json={"url": "https://img.test/a", "model": "@cf/meta/llama-3.2-11b-vision-instruct"},
        headers=HEADERS,
    )

    assert resp.json() == {"success": True, "isPerson": True}
    image_url = service.calls[0]["input"]["messages"][0]["content"][1]["image_url"]["url"]
    assert image_url.startswith("data:image/png;base64,")


def test_detect_invalid_json(settings):
    resp = client_for(settings).post(
        DETECT, content=b"{not json", headers={**HEADERS, "content-type": "application/json"}
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Request body must be valid JSON"


def test_detect_schema_violation(settings):
    resp = client_for(settings).post(DETECT, json={"url": "not-a-url", "threshold": 2}, headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_INPUT"


def test_detect_unsupported_content_type(settings):
    resp = client_for(settings).post(DETECT, content=b"hello", headers={**HEADERS, "content-type": "text/plain"})
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Unsupported content-type"


def test_detect_fetch_failure_status(settings):
    transport = httpx.MockTransport(lambda req: httpx.Response(500))
    resp = client_for(settings, transport=transport).post(DETECT, json={"url": "https://img.test/x"}, headers=HEADERS)

    assert resp.status_code == 502
    assert resp.json()["error"]["message"] == "Failed to fetch image: 500"


# --- person detection: multipart ------------------------------------------------


def test_detect_upload(settings):
    service = FakeModelService(result=[{"label": "person", "score": 0.8}])

    resp = client_for(settings, service).post(
        DETECT,
        files={"file": ("a.png", make_png(), "image/png")},
        data={"threshold": "0.7", "minAreaRatio": "0.2"},
        headers=HEADERS,
    )

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "isPerson": True}
    assert service.calls[0]["model"] == settings.detection_model


def test_detect_upload_too_large(settings):
    big = b"\xff\xd8\xff" + b"\x00" * (11 * 1024 * 1024)
    service = FakeModelService(result=[])

    resp = client_for(settings, service).post(
        DETECT, files={"file": ("big.jpg", big, "image/jpeg")}, headers=HEADERS
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_INPUT"
    assert "too large" in resp.json()["error"]["message"]
    assert service.calls == []


def test_detect_upload_without_file(settings):
    resp = client_for(settings).post(
        DETECT, files={"other": ("a.txt", b"x", "text/plain")}, data={"threshold": "0.5"}, headers=HEADERS
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "file is required"


def test_detect_upload_corrupt_avif(settings):
    service = FakeModelService(result=[])

    resp = client_for(settings, service).post(
        DETECT, files={"file": ("a.avif", b"\x00\x00\x00\x1cftypavif" + b"\x00" * 32, "image/avif")}, headers=HEADERS
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Failed to decode AVIF image"
    assert service.calls == []


def test_detect_upload_bad_reply_from_vision_model(settings):
    service = FakeModelService(result={"response": "no idea"})

    resp = client_for(settings, service).post(
        DETECT,
        files={"file": ("a.png", make_png(), "image/png")},
        data={"strategy": "vision"},
        headers=HEADERS,
    )

    assert resp.status_code == 502
    assert resp.json()["error"]["raw"] == {"response": "no idea"}
    assert service.calls[0]["model"] == settings.vision_model



def test_detect_upload_binary_reply_bbox(settings):
    service = FakeModelService(result=b"\x00\x01binary")

    resp = client_for(settings, service).post(
        DETECT, files={"file": ("a.png", make_png(), "image/png")}, headers=HEADERS
    )

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "isPerson": False}


def test_detect_upload_binary_reply_vision(settings):
    service = FakeModelService(result=b"\xffjunk")

    resp = client_for(settings, service).post(
        DETECT,
        files={"file": ("a.png", make_png(), "image/png")},
        data={"strategy": "vision"},
        headers=HEADERS,
    )

    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "AI_RUN_RESPONSE_ERROR"
    assert resp.json()["error"]["raw"] == base64.b64encode(b"\xffjunk").decode()


def test_detect_non_list_bbox_reply(settings):
    resp = client_for(settings, FakeModelService(result={"foo": 1})).post(
        DETECT, files={"file": ("a.png", make_png(), "image/png")}, headers=HEADERS
    )

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "isPerson": False}

# --- form field parsing ---------------------------------------------------------


@pytest.mark.parametrize(
    "value,expected",
    [("0.5", 0.5), (0.25, 0.25), ("", None), ("abc", None), ("nan", None), (None, None), (True, None)],
)
def test_parse_threshold(value, expected):
    assert parse_threshold(value) == expected


def test_parse_ratio_out_of_range():
    assert parse_ratio("1.5") is None
    assert parse_ratio("0.3") == 0.3
