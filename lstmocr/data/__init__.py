from .charset import NULL_LABEL, UnicharEncoder
from .samples import DocumentCache, TrainingSample

__all__ = ["NULL_LABEL", "UnicharEncoder", "DocumentCache", "TrainingSample"]
