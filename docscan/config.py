import os
from dataclasses import dataclass, field
from typing import Tuple

import cv2


class ProcessingConfig:
    # Preprocesado
    TARGET_WIDTH = 720              # Ancho de trabajo en perfil completo
    FAST_TARGET_WIDTH = 560         # Perfil rápido (preview / auto-captura)
    CLAHE_CLIP = 2.0
    CLAHE_TILE = 8
    BLUR_KERNEL = 5

    # Máscara de bordes (completo / rápido)
    CANNY_LOW = 35
    CANNY_HIGH = 120
    FAST_CANNY_LOW = 25
    FAST_CANNY_HIGH = 90
    ADAPTIVE_BLOCK_SIZE = 31
    FAST_ADAPTIVE_BLOCK_SIZE = 23
    ADAPTIVE_C = 8.0
    FAST_ADAPTIVE_C = 6.0
    CLOSE_KERNEL = 7
    FAST_CLOSE_KERNEL = 5
    DILATE_KERNEL = 3
    FAST_DILATE_KERNEL = 2

    # Candidatos
    APPROX_RATIO = 0.02
    FAST_APPROX_RATIO = 0.028
    MIN_DOCUMENT_AREA_RATIO = 0.20  # Captura manual: más estricto
    MAX_DOCUMENT_AREA_RATIO = 0.70
    AUTO_MIN_DOCUMENT_AREA_RATIO = 0.10
    AUTO_MAX_DOCUMENT_AREA_RATIO = 0.88
    BORDER_MARGIN_PX = 12.0
    AUTO_BORDER_MARGIN_PX = 4.0

    # Seguimiento temporal
    HOLD_WINDOW_MS = 500            # Re-emitir el último quad tras un fallo breve
    STALE_LOCK_MS = 1000            # Descartar el bloqueo tras este tiempo sin match
    SMOOTHING_ALPHA = 0.24
    MAX_CORNER_SHIFT_RATIO = 0.06   # Fracción de la diagonal del frame
    MAX_CENTROID_SHIFT_RATIO = 0.05
    MATCH_AREA_RATIO_MIN = 0.90
    MATCH_AREA_RATIO_MAX = 1.10

    # Zona guía (proporción de pasaporte 125:88)
    PASSPORT_ASPECT = 125.0 / 88.0
    GUIDE_MAX_WIDTH_RATIO = 0.92
    GUIDE_MAX_HEIGHT_RATIO = 0.62
    GUIDE_CENTER_Y_RATIO = 0.42
    GUIDE_MIN_OVERLAP = 0.55
    GUIDE_MIN_ASPECT = 1.1

    # Auto-captura
    AUTO_CAPTURE_MIN_GOOD_FRAMES = 2
    MRZ_REQUIRED_STABLE_FRAMES = 2
    CAPTURE_JPEG_QUALITY = 100

    # MRZ / OCR
    MRZ_BAND_RATIO = 0.38           # Banda inferior del ROI
    MRZ_TARGET_WIDTH = 600
    MRZ_MIN_ROI_PX = 10
    MRZ_MIN_LINE_LEN = 24
    MRZ_MAX_LINE_LEN = 48
    MRZ_WHITELIST = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789<"
    OCR_LANG = os.getenv('MRZ_OCR_LANG', 'eng')
    OCR_OEM = int(os.getenv('MRZ_OCR_OEM', '3'))  # 0..3
    OCR_PSM_BLOCK = 6               # Bloque único
    OCR_PSM_AUTO = 3                # Segmentación automática
    TESSERACT_CMD = os.getenv('TESSERACT_CMD', '')

    # Mejora post-recorte
    ENHANCE_BLOCK_SIZE = 15
    ENHANCE_C = 15

    # Instrucciones
    TEXT_NO_PASSPORT = "Place your passport inside the guide"
    TEXT_HOLD_STILL = "Hold your position"
    TEXT_CAPTURING = "Capturing..."


@dataclass(frozen=True)
class DetectionProfile:
    fast_mode: bool = False
    relaxed_validation: bool = False


@dataclass(frozen=True)
class CandidateBounds:
    """Filtros de validación para los contornos de un frame."""
    min_area_ratio: float
    max_area_ratio: float
    border_margin: float
    retrieval_mode: int = cv2.RETR_LIST
    approx_ratio: float = ProcessingConfig.APPROX_RATIO
    allow_rect_fallback: bool = True


@dataclass(frozen=True)
class CaptureInstructions:
    place_document: str = ProcessingConfig.TEXT_NO_PASSPORT
    hold_still: str = ProcessingConfig.TEXT_HOLD_STILL
    capturing: str = ProcessingConfig.TEXT_CAPTURING


@dataclass
class ScannerSettings:
    """Configuración externa; los valores por defecto salen de ProcessingConfig."""
    target_width: int = ProcessingConfig.TARGET_WIDTH
    fast_target_width: int = ProcessingConfig.FAST_TARGET_WIDTH
    min_area_ratio: float = ProcessingConfig.MIN_DOCUMENT_AREA_RATIO
    max_area_ratio: float = ProcessingConfig.MAX_DOCUMENT_AREA_RATIO
    relaxed_min_area_ratio: float = ProcessingConfig.AUTO_MIN_DOCUMENT_AREA_RATIO
    relaxed_max_area_ratio: float = ProcessingConfig.AUTO_MAX_DOCUMENT_AREA_RATIO
    border_margin: float = ProcessingConfig.BORDER_MARGIN_PX
    relaxed_border_margin: float = ProcessingConfig.AUTO_BORDER_MARGIN_PX
    required_stable_frames: int = ProcessingConfig.AUTO_CAPTURE_MIN_GOOD_FRAMES
    mrz_required_stable_frames: int = ProcessingConfig.MRZ_REQUIRED_STABLE_FRAMES
    mrz_band_ratio: float = ProcessingConfig.MRZ_BAND_RATIO
    mrz_target_width: int = ProcessingConfig.MRZ_TARGET_WIDTH
    ocr_lang: str = ProcessingConfig.OCR_LANG
    ocr_oem: int = ProcessingConfig.OCR_OEM
    instructions: CaptureInstructions = field(default_factory=CaptureInstructions)

    def __post_init__(self) -> None:
        if self.required_stable_frames < 1 or self.mrz_required_stable_frames < 1:
            raise ValueError("required stable frames must be >= 1")
        if not 0.0 <= self.min_area_ratio < self.max_area_ratio <= 1.0:
            raise ValueError("invalid area ratio bounds")
        if not 0.0 <= self.relaxed_min_area_ratio < self.relaxed_max_area_ratio <= 1.0:
            raise ValueError("invalid relaxed area ratio bounds")
        if not 0.0 < self.mrz_band_ratio <= 1.0:
            raise ValueError("mrz_band_ratio must be in (0, 1]")

    def processing_width(self, frame_width: int, profile: DetectionProfile) -> float:
        if profile.fast_mode:
            return float(min(self.fast_target_width, frame_width))
        return float(self.target_width)

    def area_bounds(self, profile: DetectionProfile) -> Tuple[float, float]:
        if profile.relaxed_validation:
            return self.relaxed_min_area_ratio, self.relaxed_max_area_ratio
        return self.min_area_ratio, self.max_area_ratio

    def candidate_bounds(self, profile: DetectionProfile, require_temporal_stability: bool) -> CandidateBounds:
        min_ratio, max_ratio = self.area_bounds(profile)
        margin = self.relaxed_border_margin if profile.relaxed_validation else self.border_margin
        fast = profile.fast_mode
        return CandidateBounds(
            min_area_ratio=min_ratio,
            max_area_ratio=max_ratio,
            border_margin=margin,
            retrieval_mode=cv2.RETR_EXTERNAL if fast else cv2.RETR_LIST,
            approx_ratio=ProcessingConfig.FAST_APPROX_RATIO if fast else ProcessingConfig.APPROX_RATIO,
            # Sin caja mínima cuando se exige estabilidad temporal
            allow_rect_fallback=not require_temporal_stability,
        )
