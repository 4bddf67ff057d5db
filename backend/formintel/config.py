"""
Configuration management for the form extraction service.
Loads provider credentials and pipeline tuning from environment variables.
"""
import os
from typing import Optional, List
from dotenv import load_dotenv

from formintel.exceptions import ConfigurationError

# Load environment variables from .env file if it exists
load_dotenv()


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return None
    try:
        return int(value)
    except ValueError:
        return None


class Config:
    """Configuration class for provider credentials and pipeline settings."""

    # OCR provider: 'vision' (Google Vision REST) or 'textract' (AWS)
    OCR_PROVIDER: str = os.getenv('OCR_PROVIDER', 'vision').lower()
    GOOGLE_VISION_API_KEY: Optional[str] = os.getenv('GOOGLE_VISION_API_KEY')
    GOOGLE_VISION_ENDPOINT: str = os.getenv(
        'GOOGLE_VISION_ENDPOINT', 'https://vision.googleapis.com/v1/images:annotate'
    )

    # AWS Credentials (Textract)
    AWS_PROFILE: Optional[str] = os.getenv('AWS_PROFILE')
    AWS_ACCESS_KEY_ID: Optional[str] = os.getenv('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY: Optional[str] = os.getenv('AWS_SECRET_ACCESS_KEY')
    AWS_SESSION_TOKEN: Optional[str] = os.getenv('AWS_SESSION_TOKEN')
    AWS_REGION: str = os.getenv('AWS_REGION', 'us-east-1')

    # LLM (OpenAI-compatible chat completions)
    LLM_API_KEY: Optional[str] = os.getenv('LLM_API_KEY') or os.getenv('OPENAI_API_KEY')
    LLM_API_BASE: str = os.getenv('LLM_API_BASE', 'https://api.openai.com/v1')
    LLM_MODEL: str = os.getenv('LLM_MODEL', 'gpt-4o')
    LLM_VISION_MODEL: str = os.getenv('LLM_VISION_MODEL', 'gpt-4o')
    LLM_MAX_TOKENS: int = int(os.getenv('LLM_MAX_TOKENS', '16000'))
    LLM_TEMPERATURE: float = float(os.getenv('LLM_TEMPERATURE', '0.1'))
    # Unset means "no explicit override"; batching then defaults to 'low'
    LLM_REASONING_EFFORT: Optional[str] = os.getenv('LLM_REASONING_EFFORT') or None

    # Batching
    ENABLE_BATCHING: bool = os.getenv('ENABLE_BATCHING', 'true').lower() == 'true'
    # Kept raw; the orchestrator falls back to its default for invalid values
    BATCH_SIZE: Optional[int] = _optional_int('BATCH_SIZE')
    SPATIAL_SAMPLE_SIZE: int = int(os.getenv('SPATIAL_SAMPLE_SIZE', '50'))

    # Image preparation
    IMAGE_SPLIT_MAX_HEIGHT: int = int(os.getenv('IMAGE_SPLIT_MAX_HEIGHT', '4000'))
    IMAGE_SPLIT_OVERLAP: int = int(os.getenv('IMAGE_SPLIT_OVERLAP', '200'))
    IMAGE_MAX_WIDTH: int = int(os.getenv('IMAGE_MAX_WIDTH', '2048'))
    IMAGE_MAX_HEIGHT: int = int(os.getenv('IMAGE_MAX_HEIGHT', '2048'))
    IMAGE_QUALITY: int = int(os.getenv('IMAGE_QUALITY', '85'))

    # Per-stage timeouts (seconds)
    IMAGE_FETCH_TIMEOUT: float = float(os.getenv('IMAGE_FETCH_TIMEOUT', '30'))
    IMAGE_COMPRESSION_TIMEOUT: float = float(os.getenv('IMAGE_COMPRESSION_TIMEOUT', '60'))
    OCR_TIMEOUT: float = float(os.getenv('OCR_TIMEOUT', '60'))
    LLM_TIMEOUT: float = float(os.getenv('LLM_TIMEOUT', '180'))
    DOM_NAVIGATION_TIMEOUT: float = float(os.getenv('DOM_NAVIGATION_TIMEOUT', '45'))
    DOM_EXTRACTION_TIMEOUT: float = float(os.getenv('DOM_EXTRACTION_TIMEOUT', '30'))
    DOM_SETTLE_WAIT_MS: int = int(os.getenv('DOM_SETTLE_WAIT_MS', '4000'))

    # Firecrawl (rendered HTML + screenshots for URL inputs)
    FIRECRAWL_API_KEY: Optional[str] = os.getenv('FIRECRAWL_API_KEY')

    # Rate Limiting
    MAX_TOTAL_CALLS: int = int(os.getenv('MAX_TOTAL_CALLS', '500'))
    ENABLE_RATE_LIMITING: bool = os.getenv('ENABLE_RATE_LIMITING', 'true').lower() == 'true'

    # API Settings
    API_HOST: str = os.getenv('API_HOST', '0.0.0.0')
    API_PORT: int = int(os.getenv('API_PORT', '8000'))
    CORS_ORIGINS: List[str] = os.getenv('CORS_ORIGINS', 'http://localhost:3000').split(',')

    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO').upper()

    @classmethod
    def validate(cls) -> bool:
        """
        Validate that required configuration is present.

        Collects every problem before raising so a misconfigured deployment
        reports all of them at once.
        """
        problems = []

        if not cls.LLM_API_KEY:
            problems.append("LLM_API_KEY (or OPENAI_API_KEY) environment variable is required.")

        if cls.OCR_PROVIDER == 'vision':
            if not cls.GOOGLE_VISION_API_KEY:
                problems.append("GOOGLE_VISION_API_KEY is required when OCR_PROVIDER=vision.")
        elif cls.OCR_PROVIDER == 'textract':
            if not cls.AWS_PROFILE and (not cls.AWS_ACCESS_KEY_ID or not cls.AWS_SECRET_ACCESS_KEY):
                problems.append(
                    "AWS credentials not found. Set AWS_PROFILE or "
                    "AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY."
                )
            # Temporary credentials (ASIA) need a session token
            if cls.AWS_ACCESS_KEY_ID and cls.AWS_ACCESS_KEY_ID.startswith('ASIA') and not cls.AWS_SESSION_TOKEN:
                problems.append("Temporary credentials (ASIA) detected but AWS_SESSION_TOKEN is not set.")
        else:
            problems.append(f"OCR_PROVIDER must be 'vision' or 'textract', got '{cls.OCR_PROVIDER}'.")

        if cls.IMAGE_SPLIT_MAX_HEIGHT <= 0:
            problems.append("IMAGE_SPLIT_MAX_HEIGHT must be positive.")
        if cls.IMAGE_SPLIT_OVERLAP < 0 or cls.IMAGE_SPLIT_OVERLAP >= cls.IMAGE_SPLIT_MAX_HEIGHT:
            problems.append("IMAGE_SPLIT_OVERLAP must be >= 0 and smaller than IMAGE_SPLIT_MAX_HEIGHT.")
        if cls.IMAGE_MAX_WIDTH <= 0 or cls.IMAGE_MAX_HEIGHT <= 0:
            problems.append("IMAGE_MAX_WIDTH and IMAGE_MAX_HEIGHT must be positive.")
        if not 1 <= cls.IMAGE_QUALITY <= 100:
            problems.append("IMAGE_QUALITY must be between 1 and 100.")
        if cls.LLM_REASONING_EFFORT and cls.LLM_REASONING_EFFORT not in ('low', 'medium', 'high'):
            problems.append("LLM_REASONING_EFFORT must be one of: low, medium, high.")

        for name in ('IMAGE_FETCH_TIMEOUT', 'IMAGE_COMPRESSION_TIMEOUT', 'OCR_TIMEOUT',
                     'LLM_TIMEOUT', 'DOM_NAVIGATION_TIMEOUT', 'DOM_EXTRACTION_TIMEOUT'):
            if getattr(cls, name) <= 0:
                problems.append(f"{name} must be positive.")

        if problems:
            raise ConfigurationError("Invalid configuration:\n  - " + "\n  - ".join(problems))
        return True

    @classmethod
    def get_boto3_config(cls) -> dict:
        """
        Get AWS configuration dictionary for boto3.
        """
        config = {'region_name': cls.AWS_REGION}

        if cls.AWS_PROFILE:
            return {'profile_name': cls.AWS_PROFILE, 'region_name': cls.AWS_REGION}
        elif cls.AWS_ACCESS_KEY_ID and cls.AWS_SECRET_ACCESS_KEY:
            config.update({
                'aws_access_key_id': cls.AWS_ACCESS_KEY_ID,
                'aws_secret_access_key': cls.AWS_SECRET_ACCESS_KEY
            })
            if cls.AWS_SESSION_TOKEN:
                config['aws_session_token'] = cls.AWS_SESSION_TOKEN

        return config

    @classmethod
    def get_split_config(cls) -> dict:
        """Split thresholds for tall images."""
        return {
            'max_height': cls.IMAGE_SPLIT_MAX_HEIGHT,
            'overlap': cls.IMAGE_SPLIT_OVERLAP,
        }
