"""
Taxonomía de errores del escáner.
Los casos esperados ("no hay documento") nunca se señalan con excepciones;
estas clases cubren violaciones de contrato y fallos de recursos.
"""


class ScannerError(Exception):
    """Base exception for scanner errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }

class InvalidQuadError(ScannerError, ValueError):
    """Quad con un número de puntos distinto de 4 (violación de contrato)"""
    def __init__(self, count):
        super().__init__(
            message=f"A quad needs exactly 4 points, got {count}",
            error_code="INVALID_QUAD",
            details={"points": count}
        )

class FrameDecodeError(ScannerError):
    """Imagen de entrada ilegible"""
    def __init__(self, reason=None):
        super().__init__(
            message="Failed to decode image",
            error_code="FRAME_DECODE_FAILED",
            details={
                "reason": reason,
                "suggestion": "Send a JPEG/PNG as multipart 'image' or base64 JSON field 'image'"
            }
        )

class OcrUnavailableError(ScannerError):
    """Motor OCR no inicializable (binario o traineddata ausente)"""
    def __init__(self, lang, reason=None):
        super().__init__(
            message=f"OCR engine unavailable for language '{lang}'",
            error_code="OCR_UNAVAILABLE",
            details={
                "lang": lang,
                "reason": reason,
                "suggestion": "Install tesseract and the traineddata, or set TESSERACT_CMD"
            }
        )

class SessionNotFoundError(ScannerError):
    """Sesión de escaneo inexistente o ya cerrada"""
    def __init__(self, session_id):
        super().__init__(
            message=f"Scan session not found: {session_id}",
            error_code="SESSION_NOT_FOUND",
            details={"session_id": session_id}
        )
