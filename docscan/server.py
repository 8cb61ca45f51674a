from flask import Flask, request, jsonify
import base64
import json
import binascii
import os
import threading
from dataclasses import replace
import logging

import cv2
import numpy as np
from werkzeug.exceptions import BadRequest
from werkzeug.utils import secure_filename

from .config import DetectionProfile, ScannerSettings
from .document_processor import crop_document, detect_document, enhance_document
from .errors import FrameDecodeError, InvalidQuadError, ScannerError, SessionNotFoundError
from .mrz_gate import MrzGate, TesseractEngine
from .quad import Rect
from .session import ScanMode, ScanSession
from .utils.scoring import default_guide_zone

SERVICE_VERSION = "1.0.0"

# Logging básico configurable por env
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s %(levelname)s %(name)s %(message)s'
)
logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._sessions = {}

    def add(self, session: ScanSession) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def get(self, session_id: str) -> ScanSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def pop(self, session_id: str) -> ScanSession:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def __len__(self):
        with self._lock:
            return len(self._sessions)


def _json_body() -> dict:
    if request.files:
        return request.form.to_dict()
    return request.get_json(force=True, silent=True) or {}


def _flag(data: dict, key: str) -> bool:
    value = data.get(key, False)
    if isinstance(value, str):
        return value.lower() in ("1", "true", "yes")
    return bool(value)


def decode_image(data: dict) -> np.ndarray:
    """Lee la imagen de multipart 'image' o del campo JSON 'image' en base64 (admite data URL)."""
    raw = None
    if request.files:
        image_file = request.files.get("image") or next(iter(request.files.values()), None)
        if image_file is not None:
            raw = image_file.read()
            logger.debug("multipart_upload name=%s bytes=%d", secure_filename(image_file.filename or ""), len(raw))
    if raw is None:
        encoded = data.get("image")
        if not encoded:
            raise FrameDecodeError("missing image")
        if "," in encoded and encoded.startswith("data:"):
            encoded = encoded.split(",", 1)[1]
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise FrameDecodeError(f"invalid base64: {e}") from e
    if not raw:
        raise FrameDecodeError("empty payload")
    image = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise FrameDecodeError("not a decodable image")
    return image


def encode_png(image: np.ndarray) -> str:
    ok, buf = cv2.imencode(".png", image)
    if not ok:
        raise RuntimeError("PNG encoding failed")
    return base64.b64encode(buf.tobytes()).decode("ascii")


def _parse_corners(data: dict):
    corners = data.get("corners")
    if isinstance(corners, str):
        try:
            corners = json.loads(corners)
        except ValueError as e:
            raise BadRequest(f"'corners' is not valid JSON: {e}")
    if corners is None:
        raise BadRequest("Missing 'corners'")
    try:
        pts = np.asarray(corners, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise BadRequest(f"'corners' must be numeric pairs: {e}")
    if pts.size != 8:
        raise InvalidQuadError(pts.size // 2)
    return pts.reshape(4, 2)


def _parse_guide_rect(data: dict, image: np.ndarray) -> Rect:
    guide = data.get("guideRect")
    if guide is None:
        h, w = image.shape[:2]
        return default_guide_zone(w, h)
    if isinstance(guide, str):
        try:
            guide = json.loads(guide)
        except ValueError as e:
            raise BadRequest(f"'guideRect' is not valid JSON: {e}")
    if isinstance(guide, dict):
        guide = [guide.get("x", 0), guide.get("y", 0), guide.get("width", 0), guide.get("height", 0)]
    try:
        return Rect(*(float(v) for v in guide))
    except (TypeError, ValueError) as e:
        raise BadRequest(f"'guideRect' must be [x, y, width, height]: {e}")


def create_app(settings=None, ocr_engine_factory=None):
    app = Flask(__name__)
    app.config["SCANNER_SETTINGS"] = settings or ScannerSettings()
    app.config["OCR_ENGINE_FACTORY"] = ocr_engine_factory
    sessions = SessionRegistry()
    app.extensions["docscan_sessions"] = sessions

    def build_gate(settings, required=None):
        factory = app.config["OCR_ENGINE_FACTORY"]
        engine = factory() if factory else TesseractEngine(settings.ocr_lang, settings.ocr_oem)
        return MrzGate(
            required_stable_frames=required or settings.mrz_required_stable_frames,
            band_ratio=settings.mrz_band_ratio,
            target_width=settings.mrz_target_width,
            engine=engine,
        )

    @app.errorhandler(ScannerError)
    def handle_scanner_error(error):
        status = 404 if isinstance(error, SessionNotFoundError) else 400
        logger.warning("request_failed code=%s message=%s", error.error_code, error.message)
        return jsonify(error.to_dict()), status

    @app.errorhandler(BadRequest)
    def handle_bad_request(error):
        return jsonify({
            "success": False,
            "error": error.description,
            "error_code": "BAD_REQUEST",
            "details": {},
        }), 400

    @app.route("/health", methods=["GET"])
    def health():
        factory = app.config["OCR_ENGINE_FACTORY"]
        settings = app.config["SCANNER_SETTINGS"]
        engine = factory() if factory else TesseractEngine(settings.ocr_lang, settings.ocr_oem)
        try:
            engine.initialize()
            ocr_available = True
        except ScannerError as e:
            logger.info("health_ocr_unavailable details=%s", e.details)
            ocr_available = False
        finally:
            engine.release()
        return jsonify({
            "status": "ok",
            "service": "docscan",
            "version": SERVICE_VERSION,
            "ocr": {"available": ocr_available},
            "sessions": len(sessions),
        }), 200

    @app.route("/detect", methods=["POST"])
    def detect():
        data = _json_body()
        image = decode_image(data)
        profile = DetectionProfile(
            fast_mode=_flag(data, "fastMode"),
            relaxed_validation=_flag(data, "relaxedValidation"),
        )
        quad = detect_document(image, profile, settings=app.config["SCANNER_SETTINGS"])
        h, w = image.shape[:2]
        return jsonify({
            "success": True,
            "detected": quad is not None,
            "corners": quad.to_list() if quad is not None else None,
            "size": [w, h],
        }), 200

    @app.route("/crop", methods=["POST"])
    def crop():
        data = _json_body()
        image = decode_image(data)
        corners = _parse_corners(data)
        cropped = crop_document(image, corners)
        if _flag(data, "enhance"):
            cropped = enhance_document(cropped)
        return jsonify({
            "success": True,
            "width": int(cropped.shape[1]),
            "height": int(cropped.shape[0]),
            "image": encode_png(cropped),
        }), 200

    @app.route("/enhance", methods=["POST"])
    def enhance():
        data = _json_body()
        image = decode_image(data)
        out = enhance_document(image)
        return jsonify({"success": True, "image": encode_png(out)}), 200

    @app.route("/mrz-check", methods=["POST"])
    def mrz_check():
        data = _json_body()
        image = decode_image(data)
        guide = _parse_guide_rect(data, image)
        # Puerta de un solo frame: el contador nunca pasa de 1
        gate = build_gate(app.config["SCANNER_SETTINGS"], required=1)
        try:
            result = gate.check(image, guide)
            available = gate.available
        finally:
            gate.release()
        payload = result.to_dict()
        payload.update({"success": True, "ocrAvailable": available, "shouldCapture": result.should_capture})
        return jsonify(payload), 200

    @app.route("/sessions", methods=["POST"])
    def create_session():
        data = request.get_json(force=True, silent=True) or {}
        try:
            mode = ScanMode(data.get("mode", ScanMode.PREVIEW.value))
        except ValueError:
            raise BadRequest(f"Unknown mode '{data.get('mode')}', expected one of preview/auto/mrz")
        base = app.config["SCANNER_SETTINGS"]
        overrides = {}
        if "requiredStableFrames" in data:
            try:
                required = int(data["requiredStableFrames"])
            except (TypeError, ValueError):
                raise BadRequest("'requiredStableFrames' must be an integer")
            overrides = {"required_stable_frames": required, "mrz_required_stable_frames": required}
        try:
            settings = replace(base, **overrides)
        except ValueError as e:
            raise BadRequest(str(e))
        gate = build_gate(settings) if mode == ScanMode.AUTO_MRZ else None
        session = ScanSession(mode=mode, settings=settings, mrz_gate=gate)
        session.start_session()
        sessions.add(session)
        return jsonify({"success": True, "sessionId": session.id, "mode": mode.value}), 201

    @app.route("/sessions/<session_id>/frames", methods=["POST"])
    def submit_session_frame(session_id):
        session = sessions.get(session_id)
        data = _json_body()
        image = decode_image(data)
        guide = _parse_guide_rect(data, image) if data.get("guideRect") is not None else None
        outcome = session.process_frame(image, guide)
        payload = outcome.to_dict()
        payload["success"] = not outcome.dropped
        payload["sessionId"] = session.id
        if outcome.capture is not None:
            payload["capture"] = base64.b64encode(outcome.capture).decode("ascii")
        # Otro frame de la sesión sigue en análisis
        return jsonify(payload), 409 if outcome.dropped else 200

    @app.route("/sessions/<session_id>", methods=["DELETE"])
    def delete_session(session_id):
        session = sessions.pop(session_id)
        session.release_resources()
        return jsonify({"success": True, "sessionId": session_id}), 200

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    debug = os.getenv("FLASK_DEBUG", "false").lower() == "true"
    app.run(host="0.0.0.0", port=port, debug=debug)
