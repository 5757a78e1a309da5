"""
Layer 3 — Gemini provider
Sends the document inline to Gemini through the google-genai SDK, with the
extraction instruction and a response schema, and returns the raw JSON text
of the answer.

Retries and error classification are not done here; see client.py.
"""
import logging
from typing import Optional

import httpx
from google import genai
from google.genai import errors, types

from error_handlers import MalformedResponseError
from .fields import RESPONSE_SCHEMA

logger = logging.getLogger(__name__)

DEFAULT_MODEL = 'gemini-flash-lite-latest'

EXTRACTION_PROMPT = """Tu es un assistant administratif d'un établissement scolaire français.
Le document joint est un certificat médical ou une demande de dispense d'EPS.
Renvoie un objet JSON contenant exactement ces six champs :

- lastName : nom de famille de l'élève, en MAJUSCULES
- firstName : prénom de l'élève
- studentClass : classe de l'élève (ex. 602, 3èmeB, T01, TermA)
- durationDays : durée totale de l'inaptitude en jours (nombre entier)
- startDate : date de début de l'inaptitude au format YYYY-MM-DD
- isTerminale : true si l'élève est en classe de Terminale, sinon false

Règles :
1. Mets null pour toute information absente ou illisible. N'invente jamais de valeur.
2. Réponds uniquement avec le JSON, sans commentaire."""


class ProviderCallError(Exception):
    """Raised by a provider when a call fails; carries the raw provider message"""
    def __init__(self, message, status_code=None, status=None):
        self.message = message
        self.status_code = status_code
        self.status = status
        super().__init__(self.message)


class GeminiProvider:
    """
    Extraction provider backed by the Gemini API.

    Any object with the same `credential_configured` property and
    `extract(payload, media_type)` method can stand in for it.
    """

    def __init__(self, api_key: Optional[str], model: str = DEFAULT_MODEL,
                 base_url: Optional[str] = None, timeout: float = 60.0):
        """
        Initialize Gemini provider.

        Args:
            api_key: Gemini API key (may be None; checked before each call)
            model: Model name used for generate_content
            base_url: API root override; the SDK default when None
            timeout: Request timeout in seconds
        """
        self.api_key = (api_key or '').strip()
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._client = None
        logger.info(f"Gemini provider initialized with model: {self.model}")

    @property
    def credential_configured(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> genai.Client:
        # Built on first use: the SDK refuses to construct a client without a key
        if self._client is None:
            self._client = genai.Client(
                api_key=self.api_key,
                http_options=types.HttpOptions(
                    base_url=self.base_url,
                    timeout=int(self.timeout * 1000),
                ),
            )
        return self._client

    def build_config(self) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            response_mime_type='application/json',
            response_schema=RESPONSE_SCHEMA,
            temperature=0,
        )

    def extract(self, payload: bytes, media_type: str) -> str:
        """
        Send one extraction request.

        Returns:
            str: JSON text of the structured answer

        Raises:
            ProviderCallError: Transport failure or API error
            MalformedResponseError: Answer without usable text
        """
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=[
                    types.Part.from_bytes(data=payload, mime_type=media_type),
                    EXTRACTION_PROMPT,
                ],
                config=self.build_config(),
            )
        except errors.APIError as e:
            logger.error(f"Gemini API error {e.code}: {e.message}")
            message = f"{e.code} {e.message or e.status or ''}".strip()
            raise ProviderCallError(message, status_code=e.code, status=e.status) from e
        except httpx.HTTPError as e:
            logger.error(f"Gemini request failed: {e}")
            raise ProviderCallError(f"Gemini request failed: {e}") from e

        text = (response.text or '').strip()
        if not text:
            raise MalformedResponseError("the provider could not read the document")
        return text
