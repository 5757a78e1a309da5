"""
Layer 3 — Extraction Client
Sends a normalized document to the extraction provider, retries transient
failures and turns the final failure into one classified error.

Retry rules:
- at most RetryPolicy.max_attempts attempts
- only overload / rate-limit failures are retried
- the n-th retry waits n * base_delay seconds
- anything else stops immediately
"""
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable

from error_handlers import (
    AuthError,
    PayloadTooLargeError,
    TransientProviderError,
    UnclassifiedProviderError,
)
from layer2_normalize import NormalizedDocument
from .fields import ExtractedFields, parse_extracted_fields
from .gemini import ProviderCallError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = (429, 503)
TRANSIENT_MARKERS = ('overloaded', 'unavailable', 'resource_exhausted', 'rate limit')

AUTH_STATUS_CODES = (401, 403)
AUTH_MARKERS = ('api key not valid', 'api_key_invalid', 'permission_denied', 'unauthenticated')

TOO_LARGE_STATUS_CODES = (413,)
TOO_LARGE_MARKERS = ('too large', 'payload size exceeds')

# "503 The model is overloaded." style prefix, for errors raised without a status code
LEADING_CODE = re.compile(r'\s*(\d{3})\b')


@dataclass
class RetryPolicy:
    """Retry settings for extraction calls."""
    max_attempts: int = 3
    base_delay: float = 1.0  # Seconds; multiplied by the attempt number

    def delay_for(self, attempt: int) -> float:
        return attempt * self.base_delay


def _status_code(error: ProviderCallError):
    if error.status_code is not None:
        return error.status_code
    match = LEADING_CODE.match(error.message or '')
    return int(match.group(1)) if match else None


def _matches(error: ProviderCallError, codes, markers) -> bool:
    if _status_code(error) in codes:
        return True
    text = f"{error.message} {error.status or ''}".lower()
    return any(marker in text for marker in markers)


def is_transient(error: ProviderCallError) -> bool:
    """Overload or rate-limit signal from the provider."""
    return _matches(error, TRANSIENT_STATUS_CODES, TRANSIENT_MARKERS)


def classify_error(error: ProviderCallError, attempts: int):
    """Map the last provider failure to the error surfaced to the user."""
    if is_transient(error):
        return TransientProviderError(attempts, error.message)
    if _matches(error, AUTH_STATUS_CODES, AUTH_MARKERS):
        return AuthError(error.message, rejected=True)
    if _matches(error, TOO_LARGE_STATUS_CODES, TOO_LARGE_MARKERS):
        return PayloadTooLargeError(source="provider")
    return UnclassifiedProviderError(error.message, status_code=error.status_code)


class ExtractionClient:
    """
    Stateless wrapper around an extraction provider.

    The provider needs a `credential_configured` property and an
    `extract(payload, media_type)` method returning the structured answer
    (JSON text or dict), raising ProviderCallError on failure.
    """

    def __init__(self, provider, retry_policy: RetryPolicy = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep

    def extract(self, document: NormalizedDocument) -> ExtractedFields:
        """
        Extract the six exemption fields from a document.

        Raises:
            AuthError: Credential missing or rejected
            TransientProviderError: Provider busy through every attempt
            PayloadTooLargeError: Provider refused the document size
            MalformedResponseError: Answer does not match the schema
            UnclassifiedProviderError: Anything else, with the raw message
        """
        if not getattr(self.provider, 'credential_configured', False):
            raise AuthError("no API key configured", rejected=False)

        policy = self.retry_policy
        last_error = None
        attempt = 0

        for attempt in range(1, policy.max_attempts + 1):
            try:
                logger.info(f"Extraction attempt {attempt}/{policy.max_attempts} ({document.media_type})")
                raw = self.provider.extract(document.payload, document.media_type)
                fields = parse_extracted_fields(raw)
                logger.info(f"Extraction succeeded on attempt {attempt}")
                return fields
            except ProviderCallError as e:
                last_error = e
                if is_transient(e) and attempt < policy.max_attempts:
                    delay = policy.delay_for(attempt)
                    logger.warning(f"Attempt {attempt} failed (provider busy). Retrying in {delay}s...")
                    self.sleep(delay)
                    continue
                break

        logger.error(f"Extraction final error after {attempt} attempt(s): {last_error}")
        raise classify_error(last_error, attempt)
