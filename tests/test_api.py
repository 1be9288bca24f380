import importlib
import os

import pytest
from fastapi.testclient import TestClient

from biometric_service import BiometricService
from face_biometrics.pipeline import BiometricPipeline
from face_biometrics.store import InMemoryTemplateStore

from tests.helpers import FAST_CAPTURE, black_frames, live_face_frames, png_bytes

API_CONFIG = os.path.join(os.path.dirname(os.path.abspath(__file__)), "api_config.yaml")


@pytest.fixture
def api(monkeypatch):
    monkeypatch.setenv("FACE_BIOMETRICS_CONFIG", API_CONFIG)
    main_api = importlib.import_module("main_api")
    service = BiometricService(BiometricPipeline(API_CONFIG, overrides=FAST_CAPTURE), InMemoryTemplateStore())
    monkeypatch.setattr(main_api, "service", service)
    return main_api


@pytest.fixture
def client(api):
    return TestClient(api.app)


def upload(frames):
    return [("files", (f"frame_{i}.png", png_bytes(frame), "image/png")) for i, frame in enumerate(frames)]


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["mode"] == "enhanced"


def test_enroll_and_verify_over_http(client):
    enrolled = client.post("/enroll/alice", files=upload(live_face_frames(10)))
    assert enrolled.status_code == 200, enrolled.text
    assert enrolled.json()["sample_count"] == 7

    verified = client.post("/verify/alice", files=upload(live_face_frames(10, seed=2)))
    assert verified.status_code == 200, verified.text
    body = verified.json()
    assert body["status"] == "accepted"
    assert body["similarity"] >= 0.8


def test_verify_unknown_subject_is_404(client):
    response = client.post("/verify/nobody", files=upload(live_face_frames(2)))
    assert response.status_code == 404


def test_non_image_upload_is_rejected(client):
    response = client.post("/enroll/alice", files=[("files", ("notes.txt", b"hello", "text/plain"))])
    assert response.status_code == 400


def test_undecodable_image_is_rejected(client):
    response = client.post("/enroll/alice", files=[("files", ("broken.png", b"\x89PNGfake", "image/png"))])
    assert response.status_code == 400


def test_timeout_maps_to_503(api, client):
    api.service.pipeline.config["capture"]["timeout"] = 0.3
    response = client.post("/enroll/carol", files=upload(black_frames(2)))
    assert response.status_code == 503
    assert response.json()["detail"]["kind"] == "timeout"


def test_busy_subject_maps_to_409(api, client):
    api.service._claim("dave")
    response = client.post("/enroll/dave", files=upload(live_face_frames(2)))
    assert response.status_code == 409
