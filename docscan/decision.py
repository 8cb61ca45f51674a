"""
Decisión de auto-captura a partir del quad del frame o del resultado MRZ.
El motor solo muta el StabilizerState de la sesión; nunca dispara la cámara.
"""
import logging
from enum import Enum
from typing import Optional, Sequence, Tuple

from .config import CaptureInstructions
from .config import ProcessingConfig as C
from .mrz_gate import MrzResult
from .quad import Quad
from .stabilizer import StabilizerState
from .utils.scoring import frame_relative_score

logger = logging.getLogger(__name__)


class CaptureDecision(Enum):
    NO_DOCUMENT = "no_document"
    DETECTED = "detected"
    HOLDING = "holding"
    CAPTURE = "capture"


class AutoCaptureDecisionEngine:
    def __init__(
        self,
        state: Optional[StabilizerState] = None,
        required_stable_frames: int = C.AUTO_CAPTURE_MIN_GOOD_FRAMES,
        instructions: Optional[CaptureInstructions] = None,
    ):
        self.state = state or StabilizerState()
        self.required_stable_frames = max(1, required_stable_frames)
        self.instructions = instructions or CaptureInstructions()
        self.in_flight = False
        self.fired = False

    def begin_session(self) -> None:
        self.in_flight = False
        self.fired = False
        self.reset()

    def reset(self) -> None:
        self.state.clear_streak()

    def decide_geometric(self, quad: Optional[Quad], inside_guide: bool) -> CaptureDecision:
        if quad is None:
            self.reset()
            return CaptureDecision.NO_DOCUMENT
        score = frame_relative_score(quad)
        if not inside_guide:
            self.reset()
            return CaptureDecision.DETECTED
        if score <= 0.0:
            # Dentro de la guía: se pide quietud aunque el frame no sume
            self.reset()
            return CaptureDecision.HOLDING

        st = self.state
        st.good_frame_streak += 1
        if score > st.best_score:
            st.best_score = score
            st.best_quad = quad.copy()
        logger.debug("auto_candidate streak=%d score=%.3f", st.good_frame_streak, score)
        return self._hold_or_capture(st.good_frame_streak)

    def decide_mrz(self, result: MrzResult, frame_size: Tuple[float, float]) -> CaptureDecision:
        if not result.detected:
            self.reset()
            return CaptureDecision.NO_DOCUMENT
        if result.corners:
            # La ROI de la guía hace de quad para el recorte final
            self.state.best_quad = Quad(result.corners, frame_size)
        return self._hold_or_capture(result.stable_frame_count)

    def _hold_or_capture(self, count: int) -> CaptureDecision:
        if count >= self.required_stable_frames and not self.in_flight and not self.fired:
            self.in_flight = True
            self.fired = True
            logger.info("auto_capture_triggered count=%d required=%d", count, self.required_stable_frames)
            return CaptureDecision.CAPTURE
        return CaptureDecision.HOLDING

    def instruction_for(self, decision: CaptureDecision) -> str:
        if decision == CaptureDecision.CAPTURE:
            return self.instructions.capturing
        if decision == CaptureDecision.HOLDING:
            return self.instructions.hold_still
        return self.instructions.place_document

    def complete_capture(self) -> None:
        # Tras capturar se suelta también el lock del seguimiento
        self.in_flight = False
        self.state.clear()


def pick_best_quad(quads: Sequence[Optional[Quad]]) -> Optional[Quad]:
    """El quad con mayor área relativa al frame, o None."""
    present = [q for q in quads if q is not None]
    if not present:
        return None
    return max(present, key=frame_relative_score)
