"""
Sesión de escaneo: un worker de un hilo, descarte de frames cuando está ocupado,
estado entre frames propio de la sesión y notificación a un observador.
"""
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import cv2
import numpy as np

from .config import DetectionProfile, ScannerSettings
from .config import ProcessingConfig as C
from .decision import AutoCaptureDecisionEngine, CaptureDecision, pick_best_quad
from .document_processor import crop_document, detect_document, find_candidates, is_empty_frame
from .mrz_gate import MrzGate, MrzResult
from .quad import Quad, Rect
from .stabilizer import StabilizerState, TemporalStabilizer, TrackingStatus, TrackingUpdate
from .utils.buffers import BufferTracker
from .utils.scoring import default_guide_zone, is_inside_guide

logger = logging.getLogger(__name__)

PREVIEW_PROFILE = DetectionProfile(fast_mode=False, relaxed_validation=False)
AUTO_PROFILE = DetectionProfile(fast_mode=True, relaxed_validation=True)
CAPTURE_PROFILE = DetectionProfile(fast_mode=False, relaxed_validation=False)


class ScanMode(Enum):
    PREVIEW = "preview"
    AUTO_GEOMETRIC = "auto"
    AUTO_MRZ = "mrz"


class ScanObserver:
    """Interfaz estrecha hacia la UI; las implementaciones sobreescriben lo que necesitan."""

    def on_detected(self, quad: Quad) -> None:
        pass

    def on_missed(self) -> None:
        pass

    def on_instruction(self, text: str) -> None:
        pass

    def on_capture_ready(self, jpeg_bytes: bytes) -> None:
        pass


@dataclass
class FrameOutcome:
    tracking: Optional[TrackingUpdate] = None
    decision: Optional[CaptureDecision] = None
    instruction: Optional[str] = None
    mrz: Optional[MrzResult] = None
    capture: Optional[bytes] = None
    failed: bool = False
    dropped: bool = False

    @property
    def quad(self) -> Optional[Quad]:
        return self.tracking.quad if self.tracking is not None else None

    def to_dict(self) -> dict:
        quad = self.quad
        return {
            "tracking": self.tracking.status.value if self.tracking is not None else None,
            "corners": quad.to_list() if quad is not None else None,
            "size": list(quad.size) if quad is not None else None,
            "decision": self.decision.value if self.decision is not None else None,
            "instruction": self.instruction,
            "mrz": self.mrz.to_dict() if self.mrz is not None else None,
            "captured": self.capture is not None,
            "dropped": self.dropped,
        }


def _call_inline(fn: Callable[[], None]) -> None:
    fn()


class ScanSession:
    def __init__(
        self,
        mode: ScanMode = ScanMode.PREVIEW,
        settings: Optional[ScannerSettings] = None,
        observer: Optional[ScanObserver] = None,
        dispatch: Optional[Callable[[Callable[[], None]], None]] = None,
        mrz_gate: Optional[MrzGate] = None,
    ):
        self.id = uuid.uuid4().hex
        self.mode = mode
        self.settings = settings or ScannerSettings()
        self.observer = observer or ScanObserver()
        self.dispatch = dispatch or _call_inline
        self.buffers = BufferTracker()
        self.state = StabilizerState()
        self.stabilizer = TemporalStabilizer(self.state)
        required = (
            self.settings.mrz_required_stable_frames if mode == ScanMode.AUTO_MRZ
            else self.settings.required_stable_frames
        )
        self.engine = AutoCaptureDecisionEngine(self.state, required, self.settings.instructions)
        self.mrz_gate = mrz_gate
        if self.mrz_gate is None and mode == ScanMode.AUTO_MRZ:
            self.mrz_gate = MrzGate(
                required_stable_frames=self.settings.mrz_required_stable_frames,
                band_ratio=self.settings.mrz_band_ratio,
                target_width=self.settings.mrz_target_width,
                buffers=self.buffers,
                lang=self.settings.ocr_lang,
                oem=self.settings.ocr_oem,
            )
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="docscan-frames")
        self._lock = threading.Lock()
        self._busy = False
        self._active = False
        self._released = False
        self._generation = 0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def released(self) -> bool:
        return self._released

    def start_session(self) -> None:
        if self._released:
            raise RuntimeError("scan session already released")
        with self._lock:
            self._generation += 1
            self._busy = False
            self._active = True
        self.stabilizer.reset()
        self.engine.begin_session()
        if self.mrz_gate is not None:
            self.mrz_gate.reset()
        logger.info("session_started id=%s mode=%s", self.id, self.mode.value)

    def stop_session(self, ending: bool = False) -> None:
        with self._lock:
            # Los resultados en vuelo de la generación anterior se descartan
            self._generation += 1
            self._active = False
            self._busy = False
        self.reset_tracking()
        self.engine.in_flight = False
        if self.mrz_gate is not None:
            if ending:
                self.mrz_gate.release()
            else:
                self.mrz_gate.reset()
        logger.info("session_stopped id=%s ending=%s", self.id, ending)

    def reset_tracking(self) -> None:
        self.stabilizer.reset()
        self.engine.reset()
        if self.mrz_gate is not None:
            self.mrz_gate.reset()

    def release_resources(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self.stop_session(ending=True)
        self._executor.shutdown(wait=True)
        logger.info("session_released id=%s liveBuffers=%d", self.id, self.buffers.live)

    def __enter__(self):
        self.start_session()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release_resources()
        return False

    def submit_frame(self, frame: np.ndarray, guide_rect=None) -> bool:
        """Encola el frame en el worker; False si se descarta (ocupado o sesión parada)."""
        with self._lock:
            if self._released or not self._active or self._busy:
                return False
            self._busy = True
            generation = self._generation
        self._executor.submit(self._run, frame, guide_rect, generation)
        return True

    def _run(self, frame: np.ndarray, guide_rect, generation: int) -> None:
        try:
            outcome = self._analyze(frame, guide_rect)
        except Exception:
            logger.exception("frame_failed id=%s mode=%s", self.id, self.mode.value)
            self.reset_tracking()
            outcome = FrameOutcome(failed=True)
        finally:
            with self._lock:
                if generation == self._generation:
                    self._busy = False
        self.dispatch(lambda: self._deliver(outcome, generation))

    def process_frame(self, frame: np.ndarray, guide_rect=None) -> FrameOutcome:
        """Analiza el frame en el hilo actual y notifica al observador.

        Comparte el flag `busy` con el worker: si hay un frame en análisis se
        devuelve un resultado `dropped` sin tocar el estado de la sesión.
        """
        with self._lock:
            if self._released:
                raise RuntimeError("scan session already released")
            if self._busy:
                logger.debug("frame_dropped id=%s", self.id)
                return FrameOutcome(dropped=True)
            self._busy = True
            generation = self._generation
        try:
            outcome = self._analyze(frame, guide_rect)
        finally:
            with self._lock:
                if generation == self._generation:
                    self._busy = False
        self._deliver(outcome, generation)
        return outcome

    def _deliver(self, outcome: FrameOutcome, generation: int) -> None:
        if generation != self._generation:
            logger.debug("stale_result_dropped id=%s", self.id)
            return
        tracking = outcome.tracking
        if tracking is not None and tracking.visible:
            self.observer.on_detected(tracking.quad)
        elif outcome.failed or (tracking is not None and tracking.status == TrackingStatus.LOST):
            self.observer.on_missed()
        elif outcome.mrz is not None and not outcome.mrz.detected:
            self.observer.on_missed()
        if outcome.instruction is not None:
            self.observer.on_instruction(outcome.instruction)
        if outcome.capture is not None:
            self.observer.on_capture_ready(outcome.capture)

    def _analyze(self, frame: np.ndarray, guide_rect) -> FrameOutcome:
        if is_empty_frame(frame):
            tracking = self.stabilizer.update([])
            if self.mode == ScanMode.PREVIEW:
                return FrameOutcome(tracking=tracking)
            self.engine.reset()
            if self.mrz_gate is not None:
                self.mrz_gate.reset()
            decision = CaptureDecision.NO_DOCUMENT
            return FrameOutcome(
                tracking=TrackingUpdate(TrackingStatus.LOST),
                decision=decision,
                instruction=self.engine.instruction_for(decision),
            )
        if self.mode == ScanMode.PREVIEW:
            return self._analyze_preview(frame)
        if self.mode == ScanMode.AUTO_GEOMETRIC:
            return self._analyze_geometric(frame, guide_rect)
        return self._analyze_mrz(frame, guide_rect)

    def _analyze_preview(self, frame: np.ndarray) -> FrameOutcome:
        detection = find_candidates(
            frame, PREVIEW_PROFILE, require_temporal_stability=True,
            settings=self.settings, buffers=self.buffers,
        )
        candidates = detection.candidates if detection is not None else []
        return FrameOutcome(tracking=self.stabilizer.update(candidates))

    def _guide_zone(self, frame: np.ndarray, guide_rect) -> Rect:
        h, w = frame.shape[:2]
        if guide_rect is None:
            return default_guide_zone(w, h)
        return Rect(*guide_rect)

    def _analyze_geometric(self, frame: np.ndarray, guide_rect) -> FrameOutcome:
        detection = find_candidates(
            frame, AUTO_PROFILE, require_temporal_stability=True,
            settings=self.settings, buffers=self.buffers,
        )
        candidates = detection.candidates if detection is not None else []
        tracking = self.stabilizer.update(candidates)
        # Solo un quad detectado en este frame cuenta; HELD/UNCHANGED re-emiten el anterior
        quad = tracking.quad if tracking.status == TrackingStatus.ACCEPTED else None

        inside = False
        if quad is not None:
            # Guía en píxeles del frame, el quad está en el espacio redimensionado
            zone = self._guide_zone(frame, guide_rect)
            inside = is_inside_guide(quad.mapped_to(self._frame_size(frame)), zone)
        decision = self.engine.decide_geometric(quad, inside)
        return self._finish(frame, FrameOutcome(tracking=tracking, decision=decision))

    def _analyze_mrz(self, frame: np.ndarray, guide_rect) -> FrameOutcome:
        zone = self._guide_zone(frame, guide_rect)
        result = self.mrz_gate.check(frame, zone)
        decision = self.engine.decide_mrz(result, self._frame_size(frame))
        tracking = None
        if result.detected and self.state.best_quad is not None:
            tracking = TrackingUpdate(TrackingStatus.ACCEPTED, self.state.best_quad)
        return self._finish(frame, FrameOutcome(tracking=tracking, decision=decision, mrz=result))

    def _finish(self, frame: np.ndarray, outcome: FrameOutcome) -> FrameOutcome:
        outcome.instruction = self.engine.instruction_for(outcome.decision)
        if outcome.decision == CaptureDecision.CAPTURE:
            try:
                outcome.capture = self._capture(frame)
            finally:
                self.engine.complete_capture()
                if self.mrz_gate is not None:
                    self.mrz_gate.reset()
        return outcome

    @staticmethod
    def _frame_size(frame: np.ndarray):
        return float(frame.shape[1]), float(frame.shape[0])

    def _capture(self, frame: np.ndarray) -> bytes:
        size = self._frame_size(frame)
        tracked = self.state.best_quad.mapped_to(size) if self.state.best_quad is not None else None
        fresh = None
        if self.mode == ScanMode.AUTO_GEOMETRIC:
            fresh = detect_document(frame, CAPTURE_PROFILE, settings=self.settings, buffers=self.buffers)
        quad = pick_best_quad([tracked, fresh])
        if quad is not None:
            logger.info("capture_cropped id=%s corners=%s", self.id, quad.to_list())
            output = crop_document(frame, quad)
        else:
            logger.info("capture_full_frame id=%s", self.id)
            output = frame
        ok, buf = cv2.imencode(".jpg", output, [cv2.IMWRITE_JPEG_QUALITY, C.CAPTURE_JPEG_QUALITY])
        if not ok:
            raise RuntimeError("JPEG encoding failed")
        return buf.tobytes()
