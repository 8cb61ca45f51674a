from typing import Tuple

import numpy as np

from ..config import ProcessingConfig as C
from ..quad import Quad, Rect
from .geometry import quad_area


def calculate_score(corners: np.ndarray) -> float:
    # Área del quad ordenado (shoelace); es la puntuación que ordena los candidatos de un frame
    return quad_area(corners)


def frame_relative_score(quad: Quad) -> float:
    """Área del quad relativa al frame (0..1); 0 si el quad o el frame están vacíos."""
    area = quad.area
    frame_area = quad.size[0] * quad.size[1]
    if area <= 0.0 or frame_area <= 0.0:
        return 0.0
    return area / frame_area


def default_guide_zone(width: float, height: float) -> Rect:
    # Rectángulo con proporción de pasaporte, centrado en x y al 42% en y
    max_w = width * C.GUIDE_MAX_WIDTH_RATIO
    max_h = height * C.GUIDE_MAX_HEIGHT_RATIO
    zone_w = max_w
    zone_h = zone_w / C.PASSPORT_ASPECT
    if zone_h > max_h:
        zone_h = max_h
        zone_w = zone_h * C.PASSPORT_ASPECT
    cx = width * 0.5
    cy = height * C.GUIDE_CENTER_Y_RATIO
    return Rect(cx - zone_w * 0.5, cy - zone_h * 0.5, zone_w, zone_h)


def quad_bounds(quad: Quad) -> Rect:
    xs = quad.points[:, 0]
    ys = quad.points[:, 1]
    return Rect(float(xs.min()), float(ys.min()), float(xs.max() - xs.min()), float(ys.max() - ys.min()))


def guide_overlap(quad: Quad, zone: Rect) -> Tuple[bool, float]:
    """(centroide dentro de la zona, fracción de la caja del quad que cae en la zona)."""
    bounds = quad_bounds(quad)
    if bounds.area <= 0:
        return False, 0.0
    cx, cy = quad.centroid
    inside = zone.contains(float(cx), float(cy))
    overlap = zone.intersect(bounds).area / bounds.area
    return inside, float(overlap)


def is_inside_guide(quad: Quad, zone: Rect) -> bool:
    if zone.is_empty():
        return False
    bounds = quad_bounds(quad)
    # Pasaporte abierto en horizontal: la caja debe ser apaisada
    if bounds.width < bounds.height * C.GUIDE_MIN_ASPECT:
        return False
    inside, overlap = guide_overlap(quad, zone)
    return inside and overlap >= C.GUIDE_MIN_OVERLAP
