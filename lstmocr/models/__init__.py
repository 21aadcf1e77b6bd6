from .recognizer import LineRecognizer

__all__ = ["LineRecognizer"]
