import json
import threading
import time

import pytest
import pytesseract
from fastapi.testclient import TestClient

from fakes import PDF_BYTES, FakeRasterizer, FakeRecognizer
from vnocr.main import create_app
from vnocr.services.cleaner import VietnameseOCRCleaner


def _upload(filename: str = "hop_dong.pdf", content: bytes = PDF_BYTES, content_type: str = "application/pdf"):
    return {"file": (filename, content, content_type)}


@pytest.fixture()
def gate() -> threading.Event:
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture()
def pipeline(make_pipeline):
    return make_pipeline(
        FakeRasterizer(["Cong ty Co phan", "Xin chào"]),
        FakeRecognizer(),
        cleaner=VietnameseOCRCleaner(),
    )


@pytest.fixture()
def client(pipeline):
    with TestClient(create_app(pipeline)) as test_client:
        yield test_client


def _start_streaming(client, pipeline, **upload) -> str:
    pipeline.streaming_threshold_bytes = 1
    response = client.post("/api/ocr", files=_upload(**upload))
    assert response.status_code == 200
    return response.json()["sessionId"]


def _wait_until_running(client, session_id: str, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if client.get(f"/api/session/{session_id}/status").json()["status"] == "running":
            return
        time.sleep(0.01)
    raise AssertionError("Сессия не запустилась")


class TestHealth:
    def test_health_ok(self, client, monkeypatch) -> None:
        monkeypatch.setattr(pytesseract, "get_tesseract_version", lambda: "5.3.0")
        monkeypatch.setattr(pytesseract, "get_languages", lambda config="": ["eng", "osd", "vie"])

        data = client.get("/health").json()

        assert data["status"] == "ok"
        assert data["tesseract"]["vietnamese"] is True
        assert data["config"]["ocr_languages"] == "vie+eng"
        assert "requests" in data["metrics"]

    def test_health_degraded_without_vietnamese(self, client, monkeypatch) -> None:
        monkeypatch.setattr(pytesseract, "get_tesseract_version", lambda: "5.3.0")
        monkeypatch.setattr(pytesseract, "get_languages", lambda config="": ["eng"])

        assert client.get("/health").json()["status"] == "degraded"


class TestSynchronousOcr:
    def test_returns_text_and_metadata(self, client) -> None:
        response = client.post("/api/ocr", files=_upload())

        assert response.status_code == 200
        data = response.json()
        assert data["pages"] == 2
        assert data["rawText"] == "--- Page 1 ---\nCong ty Co phan\n\n--- Page 2 ---\nXin chào"
        assert data["cleanedText"].startswith("--- Page 1 ---\nCông ty Cổ phần")
        assert data["metadata"]["changesCount"] == 2
        assert data["filename"] == "hop_dong.pdf"
        for key in ("processingTimeMs", "ocrTimeMs", "cleaningTimeMs"):
            assert data[key] >= 0

    def test_accepts_web_client_field_name(self, client) -> None:
        response = client.post(
            "/api/ocr", files={"pdf": ("hop_dong.pdf", PDF_BYTES, "application/pdf")}
        )

        assert response.status_code == 200
        assert response.json()["pages"] == 2
        assert response.json()["filename"] == "hop_dong.pdf"

    def test_missing_file(self, client) -> None:
        response = client.post("/api/ocr", data={"config": json.dumps({"clean": False})})

        assert response.status_code == 400
        assert response.json()["error"] == "no_file"

    def test_requests_counted_once(self, client, pipeline) -> None:
        client.post("/api/ocr", files=_upload())
        client.post("/api/ocr", files=_upload(content=b"hello"))
        client.post("/api/ocr", files=_upload(content_type="image/png"))

        metrics = pipeline.metrics.snapshot()
        assert metrics["requests"] == {"synchronous": 1, "rejected": 2}
        assert metrics["errors"] == {"invalid_pdf": 1, "invalid_file_type": 1}

    def test_vietnamese_not_escaped(self, client) -> None:
        response = client.post("/api/ocr", files=_upload())
        assert "Xin chào".encode("utf-8") in response.content

    def test_clean_disabled_by_config(self, client) -> None:
        response = client.post(
            "/api/ocr",
            files=_upload(),
            data={"config": json.dumps({"clean": False, "languages": "vie"})},
        )

        assert response.status_code == 200
        assert response.json()["cleanedText"] is None

    def test_invalid_config_json(self, client) -> None:
        response = client.post("/api/ocr", files=_upload(), data={"config": "{broken"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_config"

    def test_invalid_languages(self, client) -> None:
        response = client.post(
            "/api/ocr", files=_upload(), data={"config": json.dumps({"languages": "vie; rm -rf"})}
        )
        assert response.status_code == 400

    def test_not_a_pdf(self, client) -> None:
        response = client.post("/api/ocr", files=_upload(content=b"hello"))

        assert response.status_code == 400
        assert response.json() == {
            "error": "invalid_pdf",
            "message": "Файл не является валидным PDF (отсутствует сигнатура %PDF)",
        }

    def test_wrong_content_type(self, client) -> None:
        response = client.post("/api/ocr", files=_upload(content_type="image/png"))
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_file_type"

    def test_file_too_large(self, client, pipeline) -> None:
        pipeline.max_file_size_bytes = 8
        response = client.post("/api/ocr", files=_upload())

        assert response.status_code == 413
        assert response.json()["error"] == "file_too_large"

    def test_conversion_error(self, make_pipeline) -> None:
        pipeline = make_pipeline(FakeRasterizer(["a"], fail_count=True), FakeRecognizer())
        with TestClient(create_app(pipeline)) as client:
            response = client.post("/api/ocr", files=_upload())

        assert response.status_code == 422
        assert response.json()["error"] == "conversion_failed"

    def test_ocr_error(self, make_pipeline) -> None:
        pipeline = make_pipeline(FakeRasterizer(["a", "b"]), FakeRecognizer(failing_pages={2}))
        with TestClient(create_app(pipeline)) as client:
            response = client.post("/api/ocr", files=_upload())

        assert response.status_code == 500
        assert response.json()["error"] == "ocr_failed"
        assert "rawText" not in response.json()


class TestStreamingSessions:
    def test_acknowledgement(self, client, pipeline) -> None:
        pipeline.streaming_threshold_bytes = 1
        response = client.post("/api/ocr", files=_upload())

        data = response.json()
        assert data["streaming"] is True
        assert data["statusEndpoint"] == f"/api/session/{data['sessionId']}/status"
        assert data["downloadEndpoint"] == f"/api/session/{data['sessionId']}/download"
        assert data["fileSize"] == len(PDF_BYTES)
        assert data["filename"] == "hop_dong.pdf"

    def test_poll_and_download(self, client, pipeline) -> None:
        session_id = _start_streaming(client, pipeline)
        pipeline.join(session_id, timeout=5)

        status = client.get(f"/api/session/{session_id}/status").json()
        assert status["status"] == "complete"
        assert status["complete"] is True
        assert status["hasOutput"] is True
        assert status["lastPage"] == status["totalPages"] == 2
        assert status["percentage"] == 100

        response = client.get(f"/api/session/{session_id}/download")
        assert response.status_code == 200
        assert "hop_dong_ocr_result.txt" in response.headers["content-disposition"]
        assert response.text.startswith("OCR Extraction Results")
        assert "Công ty Cổ phần" in response.text

        gone = client.get(f"/api/session/{session_id}/status")
        assert gone.status_code == 404
        assert gone.json() == {"status": "not_found"}

    def test_download_raw_variant(self, client, pipeline) -> None:
        session_id = _start_streaming(client, pipeline)
        pipeline.join(session_id, timeout=5)

        response = client.get(f"/api/session/{session_id}/download", params={"variant": "raw"})

        assert "Cong ty Co phan" in response.text

    def test_unknown_session(self, client) -> None:
        response = client.get("/api/session/nope/status")
        assert response.status_code == 404
        assert response.json() == {"status": "not_found"}

        response = client.get("/api/session/nope/download")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

        assert client.delete("/api/session/nope").status_code == 404

    def test_download_before_complete(self, make_pipeline, gate) -> None:
        pipeline = make_pipeline(FakeRasterizer(["a", "b"]), FakeRecognizer(gate=gate))
        with TestClient(create_app(pipeline)) as client:
            session_id = _start_streaming(client, pipeline)

            response = client.get(f"/api/session/{session_id}/download")

            assert response.status_code == 409
            assert response.json()["error"] == "not_ready"
            gate.set()

    def test_cancel(self, make_pipeline, gate) -> None:
        pipeline = make_pipeline(FakeRasterizer(["x"] * 5), FakeRecognizer(gate=gate), concurrency=1)
        with TestClient(create_app(pipeline)) as client:
            session_id = _start_streaming(client, pipeline)
            _wait_until_running(client, session_id)

            first = client.delete(f"/api/session/{session_id}").json()
            second = client.delete(f"/api/session/{session_id}").json()
            gate.set()
            pipeline.join(session_id, timeout=5)

            assert first == {"sessionId": session_id, "cancelled": True, "status": "running"}
            assert second["cancelled"] is False
            status = client.get(f"/api/session/{session_id}/status").json()
            assert status["status"] == "cancelled"
            assert status["complete"] is False

    def test_download_already_claimed(self, client, pipeline) -> None:
        session_id = _start_streaming(client, pipeline)
        pipeline.join(session_id, timeout=5)
        pipeline.sessions.get_output(session_id, claim=True)

        response = client.get(f"/api/session/{session_id}/download")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_failed_session_reports_error(self, make_pipeline) -> None:
        pipeline = make_pipeline(FakeRasterizer(["a", "b"]), FakeRecognizer(failing_pages={1}))
        with TestClient(create_app(pipeline)) as client:
            session_id = _start_streaming(client, pipeline)
            pipeline.join(session_id, timeout=5)

            status = client.get(f"/api/session/{session_id}/status").json()

        assert status["status"] == "failed"
        assert status["error"]
        assert status["hasOutput"] is False

    def test_list_sessions(self, client, pipeline) -> None:
        session_id = _start_streaming(client, pipeline)
        pipeline.join(session_id, timeout=5)

        data = client.get("/api/sessions").json()

        assert [s["sessionId"] for s in data["sessions"]] == [session_id]
        assert data["statistics"]["by_status"]["complete"] == 1
        assert data["metrics"]["requests"]["streaming"] == 1
