"""
Service configuration
Resolves environment variables into a single frozen settings object.
"""
import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# Credential lookup order; the first non-empty variable wins
API_KEY_VARIABLES = ('GEMINI_API_KEY', 'VITE_GEMINI_API_KEY', 'API_KEY')


def _env(key: str) -> Optional[str]:
    value = os.environ.get(key)
    return value.strip() if isinstance(value, str) and value.strip() else None


def resolve_api_key() -> Optional[str]:
    """Return the extraction provider key, or None if none is configured."""
    for name in API_KEY_VARIABLES:
        value = _env(name)
        if value:
            logger.debug(f"Extraction API key found in {name}")
            return value
    return None


@dataclass(frozen=True)
class DeskConfig:
    """Settings for the exemption desk service."""
    camera_index: int = 0
    data_dir: str = "Logs/exemptions"
    api_key: Optional[str] = None
    model: str = "gemini-flash-lite-latest"
    base_url: Optional[str] = None  # SDK default endpoint
    request_timeout: float = 60.0
    retry_delay: float = 1.0
    log_level: str = "INFO"

    @property
    def records_path(self) -> str:
        return os.path.join(self.data_dir, "exemptions.json")

    @property
    def legacy_path(self) -> str:
        return os.path.join(self.data_dir, "local_storage.json")


def load_config() -> DeskConfig:
    """
    Build the configuration from environment variables:
      - CAMERA_INDEX
      - EXEMPTION_DATA_DIR
      - GEMINI_API_KEY (or VITE_GEMINI_API_KEY / API_KEY)
      - GEMINI_MODEL, GEMINI_BASE_URL
      - EXTRACTION_TIMEOUT, EXTRACTION_RETRY_DELAY
      - LOG_LEVEL
    """
    defaults = DeskConfig()
    config = DeskConfig(
        camera_index=int(_env('CAMERA_INDEX') or defaults.camera_index),
        data_dir=_env('EXEMPTION_DATA_DIR') or defaults.data_dir,
        api_key=resolve_api_key(),
        model=_env('GEMINI_MODEL') or defaults.model,
        base_url=_env('GEMINI_BASE_URL') or defaults.base_url,
        request_timeout=float(_env('EXTRACTION_TIMEOUT') or defaults.request_timeout),
        retry_delay=float(_env('EXTRACTION_RETRY_DELAY') or defaults.retry_delay),
        log_level=(_env('LOG_LEVEL') or defaults.log_level).upper(),
    )

    if config.api_key:
        logger.info("Extraction provider: API key detected and configured")
    else:
        logger.error("Extraction provider: no API key found in the environment")

    return config
