"""
Puerta MRZ para la auto-captura de pasaportes.

Lee la banda inferior de la zona guía con Tesseract en cuatro variantes de
binarizado y exige varios frames seguidos con líneas de forma MRZ antes de
autorizar la captura.
"""
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import cv2
import numpy as np
import pytesseract

from .config import ProcessingConfig as C
from .document_processor import is_empty_frame, to_gray
from .errors import OcrUnavailableError
from .quad import Rect
from .utils.buffers import BufferTracker

logger = logging.getLogger(__name__)

_MRZ_LINE = re.compile(r"^[A-Z0-9<]{%d,%d}$" % (C.MRZ_MIN_LINE_LEN, C.MRZ_MAX_LINE_LEN))
_NOT_MRZ_CHAR = re.compile(r"[^A-Z0-9<]")
_LOG_MAX_CHARS = 240


@dataclass
class OcrCandidate:
    source: str
    raw_text: str
    lines: List[str] = field(default_factory=list)


@dataclass
class MrzGateState:
    stable_frame_count: int = 0

    def clear(self) -> None:
        self.stable_frame_count = 0


@dataclass
class MrzResult:
    detected: bool
    stable_frame_count: int = 0
    corners: Optional[List[List[float]]] = None
    source: Optional[str] = None
    lines: List[str] = field(default_factory=list)

    @property
    def should_capture(self) -> bool:
        return self.detected and self.stable_frame_count > 0

    def to_dict(self) -> dict:
        return {
            "detected": self.detected,
            "stableFrameCount": self.stable_frame_count,
            "corners": self.corners,
            "source": self.source,
            "lines": list(self.lines),
        }


def compact_for_log(text: str) -> str:
    compact = text.replace("\r", "").replace("\n", "|").strip()
    return compact[:_LOG_MAX_CHARS]


def extract_mrz_lines(raw_text: str) -> List[str]:
    lines: List[str] = []
    for line in raw_text.upper().split("\n"):
        cleaned = _NOT_MRZ_CHAR.sub("", line.replace(" ", ""))
        if _MRZ_LINE.match(cleaned):
            lines.append(cleaned)
    return lines


def score_ocr_candidate(candidate: OcrCandidate) -> int:
    if not candidate.raw_text.strip():
        return 0
    marker_bonus = 120 if any("<<" in line for line in candidate.lines) else 0
    length_score = sum(len(line) for line in candidate.lines)
    raw_bonus = min(len(candidate.raw_text), 120) // 3
    return marker_bonus + length_score + raw_bonus


def is_mrz_detected(lines: Sequence[str]) -> bool:
    if len(lines) < 2:
        return False
    return any("<<" in line or line.startswith("P<") or line.count("<") >= 3 for line in lines)


class TesseractEngine:
    """Envoltorio de pytesseract con llamadas serializadas y cierre explícito."""

    def __init__(self, lang: str = C.OCR_LANG, oem: int = C.OCR_OEM, tesseract_cmd: str = C.TESSERACT_CMD):
        self.lang = lang
        self.oem = oem
        self.tesseract_cmd = tesseract_cmd
        self.ready = False
        self.released = False
        self._lock = threading.Lock()

    def initialize(self) -> None:
        if self.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd
        try:
            version = pytesseract.get_tesseract_version()
            languages = pytesseract.get_languages(config="")
        except (pytesseract.TesseractNotFoundError, pytesseract.TesseractError, OSError) as e:
            raise OcrUnavailableError(self.lang, str(e)) from e
        if self.lang not in languages:
            raise OcrUnavailableError(self.lang, f"traineddata missing, installed={','.join(languages)}")
        with self._lock:
            self.ready = not self.released
        logger.info("ocr_ready version=%s lang=%s oem=%d", version, self.lang, self.oem)

    def image_to_text(self, image: np.ndarray, psm: int) -> str:
        config = f"--oem {self.oem} --psm {psm} -c tessedit_char_whitelist={C.MRZ_WHITELIST}"
        with self._lock:
            if not self.ready or self.released:
                return ""
            try:
                return pytesseract.image_to_string(image, lang=self.lang, config=config)
            except pytesseract.TesseractError as e:
                logger.warning("ocr_call_failed psm=%d err=%s", psm, e)
                return ""

    def release(self) -> None:
        with self._lock:
            self.released = True
            self.ready = False


class MrzGate:
    def __init__(
        self,
        required_stable_frames: int = C.MRZ_REQUIRED_STABLE_FRAMES,
        band_ratio: float = C.MRZ_BAND_RATIO,
        target_width: int = C.MRZ_TARGET_WIDTH,
        engine=None,
        state: Optional[MrzGateState] = None,
        buffers: Optional[BufferTracker] = None,
        lang: str = C.OCR_LANG,
        oem: int = C.OCR_OEM,
    ):
        self.required_stable_frames = required_stable_frames
        self.band_ratio = band_ratio
        self.target_width = target_width
        self.state = state or MrzGateState()
        self.buffers = buffers or BufferTracker()
        self.engine = engine if engine is not None else TesseractEngine(lang, oem)
        self.released = False
        self.available = self._initialize_engine()

    def _initialize_engine(self) -> bool:
        try:
            self.engine.initialize()
        except OcrUnavailableError as e:
            # La puerta queda deshabilitada: todos los frames responden detected=False
            logger.error("ocr_init_failed code=%s details=%s", e.error_code, e.details)
            return False
        return True

    @property
    def ready(self) -> bool:
        return self.available and not self.released

    def reset(self) -> None:
        self.state.clear()

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.state.clear()
        self.engine.release()
        logger.info("ocr_released")

    def _miss(self) -> MrzResult:
        self.state.clear()
        return MrzResult(detected=False, stable_frame_count=0)

    def check(self, frame: np.ndarray, guide_rect) -> MrzResult:
        if not self.ready or is_empty_frame(frame):
            return self._miss()

        h, w = frame.shape[:2]
        roi = Rect(*guide_rect).intersect(Rect(0, 0, w, h))
        x0, y0 = int(round(roi.x)), int(round(roi.y))
        x1, y1 = int(round(roi.right)), int(round(roi.bottom))
        if x1 - x0 <= C.MRZ_MIN_ROI_PX or y1 - y0 <= C.MRZ_MIN_ROI_PX:
            return self._miss()

        band_h = max(1, int(round((y1 - y0) * self.band_ratio)))
        band = frame[max(y0, y1 - band_h):y1, x0:x1]

        best: Optional[OcrCandidate] = None
        best_score = 0
        for candidate in self._run_attempts(band):
            score = score_ocr_candidate(candidate)
            logger.debug(
                "mrz_attempt source=%s score=%d lines=%d raw=%s",
                candidate.source, score, len(candidate.lines), compact_for_log(candidate.raw_text),
            )
            if best is None or score > best_score:
                best = candidate
                best_score = score

        lines = best.lines if best is not None else []
        if not is_mrz_detected(lines):
            return self._miss()

        required = max(1, self.required_stable_frames)
        self.state.stable_frame_count = min(self.state.stable_frame_count + 1, required)
        corners = [[float(x), float(y)] for x, y in Rect(x0, y0, x1 - x0, y1 - y0).corners()]
        logger.info(
            "mrz_detected source=%s stable=%d/%d",
            best.source, self.state.stable_frame_count, required,
        )
        return MrzResult(
            detected=True,
            stable_frame_count=self.state.stable_frame_count,
            corners=corners,
            source=best.source,
            lines=list(lines),
        )

    def _run_attempts(self, band: np.ndarray) -> List[OcrCandidate]:
        with self.buffers.scope() as scope:
            gray = to_gray(band, scope)
            clahe = cv2.createCLAHE(clipLimit=C.CLAHE_CLIP, tileGridSize=(C.CLAHE_TILE, C.CLAHE_TILE))
            enhanced = scope.track(clahe.apply(gray))
            scale = self.target_width / float(enhanced.shape[1])
            new_h = max(1, int(round(enhanced.shape[0] * scale)))
            interp = cv2.INTER_CUBIC if scale > 1.0 else cv2.INTER_AREA
            # El intento "enhanced" usa el CLAHE sin reescalar
            resized = scope.track(cv2.resize(enhanced, (self.target_width, new_h), interpolation=interp))
            blurred = scope.track(cv2.GaussianBlur(resized, (3, 3), 0))
            _, binary = cv2.threshold(blurred, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)
            scope.track(binary)
            # Texto oscuro sobre fondo claro
            if float(np.mean(binary)) < 127.0:
                binary = scope.track(cv2.bitwise_not(binary))
            binary_inv = scope.track(cv2.bitwise_not(binary))

            attempts = (
                ("binary", binary, C.OCR_PSM_BLOCK),
                ("binaryInv", binary_inv, C.OCR_PSM_BLOCK),
                ("enhanced", enhanced, C.OCR_PSM_BLOCK),
                ("binaryAuto", binary, C.OCR_PSM_AUTO),
            )
            results: List[OcrCandidate] = []
            for source, image, psm in attempts:
                raw = self.engine.image_to_text(image, psm)
                results.append(OcrCandidate(source=source, raw_text=raw, lines=extract_mrz_lines(raw)))
            return results
