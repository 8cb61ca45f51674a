"""
Fixtures compartidos: frames sintéticos, líneas MRZ TD3 de ejemplo,
un motor OCR falso y el cliente de test de Flask.
"""
import base64

import cv2
import numpy as np
import pytest

from docscan.errors import OcrUnavailableError

DOC_RECT = (140, 110, 500, 370)  # x0, y0, x1, y1 dentro de un frame 640x480


class FakeOcrEngine:
    """Sustituto de TesseractEngine: devuelve un texto fijo y registra las llamadas."""

    def __init__(self, text="", fail_init=False):
        self.text = text
        self.fail_init = fail_init
        self.calls = []
        self.release_count = 0

    def initialize(self):
        if self.fail_init:
            raise OcrUnavailableError("eng", "tesseract not installed")

    def image_to_text(self, image, psm):
        self.calls.append((image.shape, psm))
        return self.text

    def release(self):
        self.release_count += 1


def make_document_frame(width=640, height=480, rect=DOC_RECT, background=40, paper=200):
    frame = np.full((height, width, 3), background, dtype=np.uint8)
    x0, y0, x1, y1 = rect
    cv2.rectangle(frame, (x0, y0), (x1, y1), (paper, paper, paper), thickness=-1)
    return frame


def png_base64(image):
    ok, buf = cv2.imencode(".png", image)
    assert ok
    return base64.b64encode(buf.tobytes()).decode("ascii")


@pytest.fixture
def document_frame():
    return make_document_frame()


@pytest.fixture
def blank_frame():
    return np.full((480, 640, 3), 40, dtype=np.uint8)


@pytest.fixture
def sample_mrz_td3():
    """TD3 MRZ (pasaporte) de ejemplo."""
    return [
        "P<UTOSMITH<<JOHN<<<<<<<<<<<<<<<<<<<<<<<<<<<",
        "L898902C36UTO7408122F1204159ZE184226B<<<<<10",
    ]


@pytest.fixture
def mrz_text(sample_mrz_td3):
    return "\n".join(sample_mrz_td3) + "\n"


@pytest.fixture
def fake_engine(mrz_text):
    return FakeOcrEngine(text=mrz_text)


@pytest.fixture
def app(mrz_text):
    from docscan.server import create_app
    flask_app = create_app(ocr_engine_factory=lambda: FakeOcrEngine(text=mrz_text))
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()
