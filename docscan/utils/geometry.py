from itertools import permutations
from typing import Tuple
import numpy as np
import cv2

EPS = 1e-6


def order_corners(pts: np.ndarray) -> np.ndarray:
    # Heurística rápida; puede cruzar diagonales en quads casi cuadrados o girados
    pts = np.asarray(pts, dtype=np.float32).reshape(4, 2)
    rect = np.zeros((4, 2), dtype="float32")
    s = pts.sum(axis=1)
    diff = np.diff(pts, axis=1).reshape(-1)
    rect[0] = pts[np.argmin(s)]  # TL
    rect[2] = pts[np.argmax(s)]  # BR
    rect[1] = pts[np.argmin(diff)]  # TR
    rect[3] = pts[np.argmax(diff)]  # BL
    return rect


def signed_area(pts: np.ndarray) -> float:
    # Shoelace; positivo para sentido horario en coordenadas de imagen (y hacia abajo)
    p = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    x = p[:, 0]
    y = p[:, 1]
    return float(0.5 * (np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y)))


def quad_area(pts: np.ndarray) -> float:
    if len(pts) != 4:
        return 0.0
    return abs(signed_area(pts))


def _cross(o: np.ndarray, a: np.ndarray, b: np.ndarray) -> float:
    return float((a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0]))


def segments_intersect(p1: np.ndarray, p2: np.ndarray, q1: np.ndarray, q2: np.ndarray) -> bool:
    """Cruce propio de los segmentos p1-p2 y q1-q2 (tocarse en un extremo no cuenta)."""
    d1 = _cross(q1, q2, p1)
    d2 = _cross(q1, q2, p2)
    d3 = _cross(p1, p2, q1)
    d4 = _cross(p1, p2, q2)
    return ((d1 > EPS and d2 < -EPS) or (d1 < -EPS and d2 > EPS)) and \
        ((d3 > EPS and d4 < -EPS) or (d3 < -EPS and d4 > EPS))


def is_self_intersecting(pts: np.ndarray) -> bool:
    p = np.asarray(pts, dtype=np.float64).reshape(4, 2)
    # Solo los lados opuestos pueden cruzarse en un cuadrilátero
    return segments_intersect(p[0], p[1], p[2], p[3]) or segments_intersect(p[1], p[2], p[3], p[0])


def is_degenerate(pts: np.ndarray, min_dist: float = 1.0) -> bool:
    p = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    if p.shape[0] != 4 or not np.all(np.isfinite(p)):
        return True
    for i in range(4):
        for j in range(i + 1, 4):
            if np.linalg.norm(p[i] - p[j]) < min_dist:
                return True
    # Tres puntos colineales: área del triángulo despreciable frente a la escala del quad
    scale = max(float(np.ptp(p[:, 0])), float(np.ptp(p[:, 1])), 1.0)
    for i in range(4):
        a, b, c = p[i], p[(i + 1) % 4], p[(i + 2) % 4]
        if abs(_cross(a, b, c)) < 1e-3 * scale * scale:
            return True
    return False


def order_corners_exhaustive(pts: np.ndarray) -> np.ndarray:
    """Orden canónico TL, TR, BR, BL por búsqueda sobre las 24 permutaciones.

    Coste fijo de 24 iteraciones. Es la ruta de corrección (quad final aceptado);
    no sustituir por order_corners, que no garantiza ausencia de cruces.
    """
    p = np.asarray(pts, dtype=np.float64).reshape(4, 2)
    best = None
    best_area = -np.inf
    for perm in permutations(range(4)):
        cand = p[list(perm)]
        if is_self_intersecting(cand):
            continue
        area = signed_area(cand)
        if area > best_area + EPS:
            best_area = area
            best = cand
    if best is None:
        best = p

    # Rotar para empezar en min(x+y); empate -> menor y
    sums = best.sum(axis=1)
    keys = np.lexsort((best[:, 1], np.round(sums, 6)))
    start = int(keys[0])
    best = np.roll(best, -start, axis=0)
    # El segundo punto debe ser el que queda más a la derecha
    if best[1][0] < best[3][0]:
        best = np.array([best[0], best[3], best[2], best[1]])
    return best.astype(np.float32)


def quad_dimensions(rect: np.ndarray) -> Tuple[float, float]:
    (tl, tr, br, bl) = np.asarray(rect, dtype=np.float64)
    widthA = np.linalg.norm(br - bl)
    widthB = np.linalg.norm(tr - tl)
    heightA = np.linalg.norm(tr - br)
    heightB = np.linalg.norm(tl - bl)
    return float(max(widthA, widthB)), float(max(heightA, heightB))


def perspective_warp(image: np.ndarray, rect: np.ndarray) -> np.ndarray:
    # rect ya ordenado (tl, tr, br, bl)
    dw, dh = quad_dimensions(rect)
    maxWidth, maxHeight = max(int(dw), 1), max(int(dh), 1)
    dst = np.array(
        [[0, 0], [dw, 0], [dw, dh], [0, dh]],
        dtype="float32",
    )
    M = cv2.getPerspectiveTransform(np.asarray(rect, dtype=np.float32), dst)
    # Heurística de interpolación: CUBIC si amplía, LINEAR si reduce
    h, w = image.shape[:2]
    scale_w = maxWidth / max(w, 1)
    scale_h = maxHeight / max(h, 1)
    enlarging = scale_w > 1.0 or scale_h > 1.0
    flags = cv2.INTER_CUBIC if enlarging else cv2.INTER_LINEAR
    warped = cv2.warpPerspective(image, M, (maxWidth, maxHeight), flags=flags)
    return warped


def polygon_centroid(pts: np.ndarray) -> np.ndarray:
    return np.asarray(pts, dtype=np.float64).reshape(-1, 2).mean(axis=0)


def mean_corner_distance(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype=np.float64).reshape(4, 2)
    b = np.asarray(b, dtype=np.float64).reshape(4, 2)
    return float(np.linalg.norm(a - b, axis=1).mean())
