from dataclasses import dataclass
from typing import List, Optional, Tuple
import time
import logging

import cv2
import numpy as np

from .config import CandidateBounds, DetectionProfile, ScannerSettings
from .config import ProcessingConfig as C
from .errors import InvalidQuadError
from .quad import Candidate, Quad
from .utils.buffers import BufferScope, BufferTracker
from .utils.geometry import (
    is_degenerate,
    is_self_intersecting,
    order_corners,
    order_corners_exhaustive,
    perspective_warp,
)
from .utils.scoring import calculate_score

logger = logging.getLogger(__name__)

# Bajo consumo: un hilo de OpenCV por worker y sin OpenCL
cv2.setNumThreads(1)
cv2.ocl.setUseOpenCL(False)


@dataclass
class Preprocessed:
    gray: np.ndarray
    scale: float
    inv_scale: float


@dataclass
class DetectionFrame:
    """Candidatos de un frame, en el espacio redimensionado `size`."""
    candidates: List[Candidate]
    size: Tuple[float, float]
    source_size: Tuple[float, float]
    inv_scale: float
    elapsed_ms: int = 0

    @property
    def best(self) -> Optional[Candidate]:
        return self.candidates[0] if self.candidates else None


def is_empty_frame(frame: Optional[np.ndarray]) -> bool:
    return frame is None or frame.size == 0 or frame.shape[0] == 0 or frame.shape[1] == 0


def to_gray(img: np.ndarray, scope: BufferScope) -> np.ndarray:
    channels = 1 if img.ndim == 2 else img.shape[2]
    if channels == 1:
        return scope.track(img.reshape(img.shape[0], img.shape[1]).copy())
    if channels == 4:
        return scope.track(cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY))
    return scope.track(cv2.cvtColor(img, cv2.COLOR_BGR2GRAY))


def preprocess_frame(frame: np.ndarray, target_width: float, scope: BufferScope) -> Preprocessed:
    h, w = frame.shape[:2]
    scale = target_width / w
    inv_scale = w / target_width
    new_w = max(int(round(target_width)), 1)
    new_h = max(int(round(h * scale)), 1)
    resized = scope.track(cv2.resize(frame, (new_w, new_h), interpolation=cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR))

    gray = to_gray(resized, scope)
    clahe = cv2.createCLAHE(clipLimit=C.CLAHE_CLIP, tileGridSize=(C.CLAHE_TILE, C.CLAHE_TILE))
    gray = scope.track(clahe.apply(gray))
    gray = scope.track(cv2.GaussianBlur(gray, (C.BLUR_KERNEL, C.BLUR_KERNEL), 0))
    return Preprocessed(gray=gray, scale=scale, inv_scale=inv_scale)


def build_edge_mask(gray: np.ndarray, fast_mode: bool, scope: BufferScope) -> np.ndarray:
    """Unión de Canny y umbral adaptativo invertido, cerrada y dilatada.

    Canny solo pierde bordes de bajo contraste; el umbral adaptativo solo es ruidoso.
    """
    canny_low = C.FAST_CANNY_LOW if fast_mode else C.CANNY_LOW
    canny_high = C.FAST_CANNY_HIGH if fast_mode else C.CANNY_HIGH
    block = C.FAST_ADAPTIVE_BLOCK_SIZE if fast_mode else C.ADAPTIVE_BLOCK_SIZE
    c = C.FAST_ADAPTIVE_C if fast_mode else C.ADAPTIVE_C
    close_k = C.FAST_CLOSE_KERNEL if fast_mode else C.CLOSE_KERNEL
    dilate_k = C.FAST_DILATE_KERNEL if fast_mode else C.DILATE_KERNEL

    edges = scope.track(cv2.Canny(gray, canny_low, canny_high))
    thresh = scope.track(cv2.adaptiveThreshold(
        gray,
        255,
        cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
        cv2.THRESH_BINARY,
        blockSize=block,
        C=c,
    ))
    inverted = scope.track(cv2.bitwise_not(thresh))
    merged = scope.track(cv2.bitwise_or(edges, inverted))

    close_kernel = scope.track(cv2.getStructuringElement(cv2.MORPH_RECT, (close_k, close_k)))
    dilate_kernel = scope.track(cv2.getStructuringElement(cv2.MORPH_RECT, (dilate_k, dilate_k)))
    closed = scope.track(cv2.morphologyEx(merged, cv2.MORPH_CLOSE, close_kernel))
    return scope.track(cv2.dilate(closed, dilate_kernel))


def _order_candidate(points: np.ndarray) -> np.ndarray:
    ordered = order_corners(points)
    # La heurística puede repetir puntos o cruzar diagonales: escalar a la búsqueda exhaustiva
    if is_degenerate(ordered) or is_self_intersecting(ordered):
        ordered = order_corners_exhaustive(points)
    return ordered


def extract_candidates(mask: np.ndarray, bounds: CandidateBounds, scope: BufferScope) -> List[Candidate]:
    h, w = mask.shape[:2]
    frame_area = float(w * h)
    size = (float(w), float(h))
    work = scope.track(mask.copy())
    contours_out = cv2.findContours(work, bounds.retrieval_mode, cv2.CHAIN_APPROX_SIMPLE)
    contours = scope.track(list(contours_out[-2]))

    candidates: List[Candidate] = []
    for cnt in contours:
        c_area = cv2.contourArea(cnt)
        if c_area < frame_area * bounds.min_area_ratio or c_area > frame_area * bounds.max_area_ratio:
            continue
        peri = cv2.arcLength(cnt, True)
        if peri <= 0.0:
            continue
        approx = scope.track(cv2.approxPolyDP(cnt, bounds.approx_ratio * peri, True))
        if len(approx) == 4:
            points = approx.reshape(4, 2).astype(np.float32)
        elif bounds.allow_rect_fallback:
            points = scope.track(cv2.boxPoints(cv2.minAreaRect(cnt)).astype(np.float32))
        else:
            continue
        if len(points) != 4:
            continue

        ordered = _order_candidate(points)
        if is_degenerate(ordered):
            continue
        m = bounds.border_margin
        touches_border = bool(np.any(
            (ordered[:, 0] <= m) | (ordered[:, 1] <= m) |
            (ordered[:, 0] >= w - m) | (ordered[:, 1] >= h - m)
        ))
        if touches_border:
            continue
        score = calculate_score(ordered)
        if score <= 0.0:
            continue
        candidates.append(Candidate(quad=Quad(ordered, size), area=score))

    candidates.sort(key=lambda cand: cand.area, reverse=True)
    return candidates


def find_candidates(
    frame: np.ndarray,
    profile: Optional[DetectionProfile] = None,
    require_temporal_stability: bool = False,
    settings: Optional[ScannerSettings] = None,
    buffers: Optional[BufferTracker] = None,
) -> Optional[DetectionFrame]:
    """Ejecuta preprocesado, máscara y extracción; None si el frame está vacío."""
    if is_empty_frame(frame):
        return None
    profile = profile or DetectionProfile()
    settings = settings or ScannerSettings()
    buffers = buffers or BufferTracker()
    t0 = time.time()

    h, w = frame.shape[:2]
    target_width = settings.processing_width(w, profile)
    bounds = settings.candidate_bounds(profile, require_temporal_stability)
    with buffers.scope() as scope:
        pre = preprocess_frame(frame, target_width, scope)
        mask = build_edge_mask(pre.gray, profile.fast_mode, scope)
        candidates = extract_candidates(mask, bounds, scope)
        resized_size = (float(pre.gray.shape[1]), float(pre.gray.shape[0]))
        inv_scale = pre.inv_scale

    dt = int((time.time() - t0) * 1000)
    logger.debug(
        "detection_done candidates=%d best=%.1f fast=%s relaxed=%s timeMs=%d",
        len(candidates),
        candidates[0].area if candidates else 0.0,
        profile.fast_mode,
        profile.relaxed_validation,
        dt,
    )
    return DetectionFrame(
        candidates=candidates,
        size=resized_size,
        source_size=(float(w), float(h)),
        inv_scale=inv_scale,
        elapsed_ms=dt,
    )


def to_source_space(quad: Quad, detection: DetectionFrame) -> Quad:
    return Quad(quad.points * np.float32(detection.inv_scale), detection.source_size)


def detect_document(
    frame: np.ndarray,
    profile: Optional[DetectionProfile] = None,
    require_temporal_stability: bool = False,
    settings: Optional[ScannerSettings] = None,
    buffers: Optional[BufferTracker] = None,
) -> Optional[Quad]:
    """Mejor quad del frame.

    Con estabilidad temporal (overlay de preview) las esquinas quedan en el espacio
    redimensionado; sin ella (captura/recorte) se devuelven en coordenadas del frame.
    """
    detection = find_candidates(frame, profile, require_temporal_stability, settings, buffers)
    if detection is None or detection.best is None:
        return None
    best = detection.best.quad
    best = Quad(order_corners_exhaustive(best.points), best.size)
    if require_temporal_stability:
        return best
    return to_source_space(best, detection)


def crop_document(image: np.ndarray, quad) -> np.ndarray:
    """Rectifica el documento delimitado por `quad` (tl, tr, br, bl) en una imagen nueva."""
    points = quad.points if isinstance(quad, Quad) else np.asarray(quad, dtype=np.float32)
    if points.size != 8:
        raise InvalidQuadError(points.size // 2)
    rect = points.reshape(4, 2).astype(np.float32)
    warped = perspective_warp(image, rect)
    logger.debug("crop_done width=%d height=%d", warped.shape[1], warped.shape[0])
    return warped


def enhance_document(image: np.ndarray) -> np.ndarray:
    # Escala de grises + CLAHE + umbral adaptativo de media para legibilidad
    if is_empty_frame(image):
        return image.copy()
    with BufferTracker().scope() as scope:
        gray = to_gray(image, scope)
        clahe = cv2.createCLAHE(clipLimit=C.CLAHE_CLIP, tileGridSize=(C.CLAHE_TILE, C.CLAHE_TILE))
        eq = scope.track(clahe.apply(gray))
        out = cv2.adaptiveThreshold(
            eq,
            255,
            cv2.ADAPTIVE_THRESH_MEAN_C,
            cv2.THRESH_BINARY,
            C.ENHANCE_BLOCK_SIZE,
            C.ENHANCE_C,
        )
    return out
