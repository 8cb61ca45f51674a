"""
Seguimiento temporal del quad en modo preview.

Estados: Idle (sin quad aceptado) -> Locked (quad aceptado dentro de la ventana)
-> Idle al expirar o con reset(). El emparejamiento exige desplazamiento de
esquinas, desplazamiento del centroide y razón de áreas acotados, así el overlay
no salta a un borde fuerte ajeno al documento.
"""
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple

import numpy as np

from .config import ProcessingConfig as C
from .quad import Candidate, Quad
from .utils.geometry import mean_corner_distance, polygon_centroid

logger = logging.getLogger(__name__)


class TrackingStatus(Enum):
    ACCEPTED = "accepted"    # quad nuevo (o suavizado) aceptado en este frame
    HELD = "held"            # sin candidatos, se re-emite el último quad
    UNCHANGED = "unchanged"  # candidatos sin match: no tocar el overlay
    LOST = "lost"            # sin documento


@dataclass
class TrackingUpdate:
    status: TrackingStatus
    quad: Optional[Quad] = None

    @property
    def visible(self) -> bool:
        return self.status in (TrackingStatus.ACCEPTED, TrackingStatus.HELD)


@dataclass
class StabilizerState:
    last_accepted: Optional[Quad] = None
    last_accepted_at_ms: float = 0.0
    good_frame_streak: int = 0
    best_score: float = 0.0
    best_quad: Optional[Quad] = None

    @property
    def locked(self) -> bool:
        return self.last_accepted is not None

    def clear_lock(self) -> None:
        self.last_accepted = None
        self.last_accepted_at_ms = 0.0

    def clear_streak(self) -> None:
        self.good_frame_streak = 0
        self.best_score = 0.0
        self.best_quad = None

    def clear(self) -> None:
        self.clear_lock()
        self.clear_streak()


def _now_ms() -> float:
    return time.monotonic() * 1000.0


def _align_to(reference: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Rota/refleja las esquinas para minimizar la distancia a `reference` punto a punto."""
    best = points
    best_cost = math.inf
    for seq in (points, points[::-1]):
        for k in range(4):
            cand = np.roll(seq, -k, axis=0)
            cost = float(np.linalg.norm(cand - reference, axis=1).sum())
            if cost < best_cost:
                best_cost = cost
                best = cand
    return best


class TemporalStabilizer:
    def __init__(
        self,
        state: Optional[StabilizerState] = None,
        hold_window_ms: float = C.HOLD_WINDOW_MS,
        stale_lock_ms: float = C.STALE_LOCK_MS,
        smoothing_alpha: float = C.SMOOTHING_ALPHA,
        max_corner_shift_ratio: float = C.MAX_CORNER_SHIFT_RATIO,
        max_centroid_shift_ratio: float = C.MAX_CENTROID_SHIFT_RATIO,
        area_ratio_range: Tuple[float, float] = (C.MATCH_AREA_RATIO_MIN, C.MATCH_AREA_RATIO_MAX),
    ):
        self.state = state or StabilizerState()
        self.hold_window_ms = hold_window_ms
        self.stale_lock_ms = stale_lock_ms
        self.smoothing_alpha = smoothing_alpha
        self.max_corner_shift_ratio = max_corner_shift_ratio
        self.max_centroid_shift_ratio = max_centroid_shift_ratio
        self.area_ratio_range = area_ratio_range

    def reset(self) -> None:
        self.state.clear_lock()

    def update(self, candidates: Sequence[Candidate], now_ms: Optional[float] = None) -> TrackingUpdate:
        now = _now_ms() if now_ms is None else float(now_ms)
        st = self.state

        if not candidates:
            if st.locked and now - st.last_accepted_at_ms <= self.hold_window_ms:
                return TrackingUpdate(TrackingStatus.HELD, st.last_accepted)
            if st.locked:
                logger.debug("tracking_lost idleMs=%d", int(now - st.last_accepted_at_ms))
            st.clear_lock()
            return TrackingUpdate(TrackingStatus.LOST)

        if not st.locked:
            return self._accept_largest(candidates, now)

        match = self._best_match(candidates)
        if match is not None:
            prev = st.last_accepted.points.astype(np.float64)
            a = self.smoothing_alpha
            smoothed = (1.0 - a) * prev + a * match.astype(np.float64)
            return self._accept(Quad(smoothed, st.last_accepted.size), now)

        if now - st.last_accepted_at_ms > self.stale_lock_ms:
            logger.info("tracking_relock staleMs=%d candidates=%d", int(now - st.last_accepted_at_ms), len(candidates))
            st.clear_lock()
            return self._accept_largest(candidates, now)
        return TrackingUpdate(TrackingStatus.UNCHANGED, st.last_accepted)

    def _accept_largest(self, candidates: Sequence[Candidate], now: float) -> TrackingUpdate:
        best = max(candidates, key=lambda c: c.area)
        return self._accept(best.quad.copy(), now)

    def _accept(self, quad: Quad, now: float) -> TrackingUpdate:
        self.state.last_accepted = quad
        self.state.last_accepted_at_ms = now
        return TrackingUpdate(TrackingStatus.ACCEPTED, quad)

    def _best_match(self, candidates: Sequence[Candidate]) -> Optional[np.ndarray]:
        prev = self.state.last_accepted
        prev_pts = prev.points.astype(np.float64)
        prev_area = prev.area
        if prev_area <= 0.0:
            return None
        w, h = prev.size
        diagonal = math.hypot(w, h)
        max_shift = self.max_corner_shift_ratio * diagonal
        max_centroid = self.max_centroid_shift_ratio * diagonal
        lo, hi = self.area_ratio_range
        band = max(hi - 1.0, 1.0 - lo, 1e-6)
        prev_centroid = polygon_centroid(prev_pts)

        best: Optional[np.ndarray] = None
        best_cost = math.inf
        for cand in candidates:
            pts = _align_to(prev_pts, cand.quad.points.astype(np.float64))
            shift = mean_corner_distance(pts, prev_pts)
            centroid_shift = float(np.linalg.norm(polygon_centroid(pts) - prev_centroid))
            ratio = cand.area / prev_area
            if shift > max_shift or centroid_shift > max_centroid or not lo <= ratio <= hi:
                continue
            cost = (
                0.5 * shift / max(max_shift, 1e-6)
                + 0.3 * centroid_shift / max(max_centroid, 1e-6)
                + 0.2 * abs(1.0 - ratio) / band
            )
            if cost < best_cost:
                best_cost = cost
                best = pts
        return best
