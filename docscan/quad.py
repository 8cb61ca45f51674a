from dataclasses import dataclass
from typing import List, NamedTuple, Tuple

import numpy as np

from .errors import InvalidQuadError
from .utils.geometry import polygon_centroid, quad_area


@dataclass
class Quad:
    """Cuatro esquinas ordenadas (tl, tr, br, bl) en el espacio de píxeles `size` = (ancho, alto)."""
    points: np.ndarray
    size: Tuple[float, float]

    def __post_init__(self) -> None:
        pts = np.asarray(self.points, dtype=np.float32)
        if pts.size != 8:
            raise InvalidQuadError(pts.size // 2)
        self.points = pts.reshape(4, 2)
        self.size = (float(self.size[0]), float(self.size[1]))

    @property
    def tl(self) -> np.ndarray:
        return self.points[0]

    @property
    def tr(self) -> np.ndarray:
        return self.points[1]

    @property
    def br(self) -> np.ndarray:
        return self.points[2]

    @property
    def bl(self) -> np.ndarray:
        return self.points[3]

    @property
    def area(self) -> float:
        return quad_area(self.points)

    @property
    def centroid(self) -> np.ndarray:
        return polygon_centroid(self.points)

    def scaled(self, sx: float, sy: float) -> "Quad":
        pts = self.points * np.array([sx, sy], dtype=np.float32)
        return Quad(pts, (self.size[0] * sx, self.size[1] * sy))

    def mapped_to(self, size: Tuple[float, float]) -> "Quad":
        """Reexpresa las esquinas en otro tamaño de imagen (p.ej. preview -> foto completa)."""
        if self.size[0] <= 0 or self.size[1] <= 0:
            raise ValueError("quad has an empty pixel space")
        return self.scaled(size[0] / self.size[0], size[1] / self.size[1])

    def copy(self) -> "Quad":
        return Quad(self.points.copy(), self.size)

    def to_list(self) -> List[List[float]]:
        return [[round(float(x), 2), round(float(y), 2)] for x, y in self.points]


@dataclass
class Candidate:
    quad: Quad
    area: float

    @property
    def score(self) -> float:
        return self.area


class Rect(NamedTuple):
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return max(self.width, 0) * max(self.height, 0)

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def contains(self, px: float, py: float) -> bool:
        return self.x <= px <= self.right and self.y <= py <= self.bottom

    def intersect(self, other: "Rect") -> "Rect":
        left = max(self.x, other.x)
        top = max(self.y, other.y)
        right = min(self.right, other.right)
        bottom = min(self.bottom, other.bottom)
        return Rect(left, top, max(0, right - left), max(0, bottom - top))

    def corners(self) -> List[Tuple[float, float]]:
        return [
            (self.x, self.y),
            (self.right, self.y),
            (self.right, self.bottom),
            (self.x, self.bottom),
        ]
