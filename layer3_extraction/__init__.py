"""
Layer 3 — Extraction
Structured field extraction through an external provider.
"""
from .client import ExtractionClient, RetryPolicy, classify_error, is_transient
from .fields import ExtractedFields, parse_extracted_fields, parse_start_date
from .gemini import GeminiProvider, ProviderCallError

__all__ = [
    'ExtractionClient',
    'RetryPolicy',
    'classify_error',
    'is_transient',
    'ExtractedFields',
    'parse_extracted_fields',
    'parse_start_date',
    'GeminiProvider',
    'ProviderCallError',
]
