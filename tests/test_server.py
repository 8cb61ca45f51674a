import base64
import io

import cv2
import numpy as np

from conftest import FakeOcrEngine, png_base64


def _decode_png(b64):
    raw = base64.b64decode(b64)
    return cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_UNCHANGED)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "ok"
    assert data["ocr"]["available"] is True


def test_health_reports_missing_ocr():
    from docscan.server import create_app
    app = create_app(ocr_engine_factory=lambda: FakeOcrEngine(fail_init=True))
    data = app.test_client().get("/health").get_json()
    assert data["ocr"]["available"] is False


def test_detect_json(client, document_frame):
    response = client.post("/detect", json={"image": png_base64(document_frame)})
    assert response.status_code == 200
    data = response.get_json()
    assert data["detected"] is True
    assert len(data["corners"]) == 4
    assert data["size"] == [640, 480]


def test_detect_multipart(client, document_frame):
    ok, buf = cv2.imencode(".png", document_frame)
    response = client.post(
        "/detect",
        data={"image": (io.BytesIO(buf.tobytes()), "frame.png"), "fastMode": "true"},
        content_type="multipart/form-data",
    )
    assert response.status_code == 200
    assert response.get_json()["detected"] is True


def test_detect_blank_frame(client, blank_frame):
    data = client.post("/detect", json={"image": png_base64(blank_frame)}).get_json()
    assert data["detected"] is False
    assert data["corners"] is None


def test_detect_missing_image(client):
    response = client.post("/detect", json={})
    assert response.status_code == 400
    data = response.get_json()
    assert data["success"] is False
    assert data["error_code"] == "FRAME_DECODE_FAILED"


def test_detect_garbage_image(client):
    payload = base64.b64encode(b"definitely not an image").decode("ascii")
    response = client.post("/detect", json={"image": payload})
    assert response.status_code == 400
    assert response.get_json()["error_code"] == "FRAME_DECODE_FAILED"


def test_crop(client, document_frame):
    corners = [[140, 110], [500, 110], [500, 370], [140, 370]]
    response = client.post("/crop", json={"image": png_base64(document_frame), "corners": corners})
    assert response.status_code == 200
    data = response.get_json()
    assert (data["width"], data["height"]) == (360, 260)
    cropped = _decode_png(data["image"])
    assert cropped.shape[:2] == (260, 360)


def test_crop_rejects_three_corners(client, document_frame):
    response = client.post("/crop", json={"image": png_base64(document_frame), "corners": [[0, 0], [1, 0], [1, 1]]})
    assert response.status_code == 400
    assert response.get_json()["error_code"] == "INVALID_QUAD"


def test_crop_requires_corners(client, document_frame):
    response = client.post("/crop", json={"image": png_base64(document_frame)})
    assert response.status_code == 400
    assert response.get_json()["error_code"] == "BAD_REQUEST"


def test_enhance(client, document_frame):
    data = client.post("/enhance", json={"image": png_base64(document_frame)}).get_json()
    out = _decode_png(data["image"])
    assert out.shape == (480, 640)


def test_mrz_check(client):
    frame = np.full((480, 640, 3), 230, dtype=np.uint8)
    response = client.post("/mrz-check", json={"image": png_base64(frame), "guideRect": [40, 100, 560, 300]})
    assert response.status_code == 200
    data = response.get_json()
    assert data["detected"] is True
    assert data["stableFrameCount"] == 1
    assert data["shouldCapture"] is True
    assert data["lines"][0].startswith("P<UTO")


def test_session_lifecycle(client, document_frame):
    created = client.post("/sessions", json={"mode": "preview"})
    assert created.status_code == 201
    session_id = created.get_json()["sessionId"]

    frame = client.post(f"/sessions/{session_id}/frames", json={"image": png_base64(document_frame)})
    assert frame.status_code == 200
    assert frame.get_json()["tracking"] == "accepted"

    deleted = client.delete(f"/sessions/{session_id}")
    assert deleted.status_code == 200

    missing = client.post(f"/sessions/{session_id}/frames", json={"image": png_base64(document_frame)})
    assert missing.status_code == 404
    assert missing.get_json()["error_code"] == "SESSION_NOT_FOUND"


def test_auto_session_captures(client, document_frame):
    session_id = client.post("/sessions", json={"mode": "auto", "requiredStableFrames": 2}).get_json()["sessionId"]
    body = {"image": png_base64(document_frame), "guideRect": [100, 80, 440, 320]}
    first = client.post(f"/sessions/{session_id}/frames", json=body).get_json()
    second = client.post(f"/sessions/{session_id}/frames", json=body).get_json()
    assert first["decision"] == "holding"
    assert second["decision"] == "capture"
    assert second["captured"] is True
    assert base64.b64decode(second["capture"])[:2] == b"\xff\xd8"
    client.delete(f"/sessions/{session_id}")


def test_unknown_session_mode(client):
    response = client.post("/sessions", json={"mode": "video"})
    assert response.status_code == 400


def test_delete_unknown_session(client):
    assert client.delete("/sessions/nope").status_code == 404


def test_frame_for_busy_session_is_rejected(app, client, document_frame):
    session_id = client.post("/sessions", json={"mode": "auto"}).get_json()["sessionId"]
    session = app.extensions["docscan_sessions"].get(session_id)
    session._busy = True
    response = client.post(f"/sessions/{session_id}/frames", json={"image": png_base64(document_frame)})
    assert response.status_code == 409
    data = response.get_json()
    assert data["dropped"] is True
    assert data["success"] is False
    client.delete(f"/sessions/{session_id}")
