"""
Layer 2 — Normalize
Size ceiling, media type sniffing and JPEG re-encoding of incoming documents.
"""
from .normalizer import (
    ImageNormalizer,
    NormalizedDocument,
    NormalizerConfig,
    resolve_media_type,
    sniff_media_type,
)

__all__ = [
    'ImageNormalizer',
    'NormalizedDocument',
    'NormalizerConfig',
    'resolve_media_type',
    'sniff_media_type',
]
