"""
Configuration management for the Punchcard loyalty service.
"""
import os
from dotenv import load_dotenv

load_dotenv()


class BaseConfig:
    """Base configuration."""
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Square POS API
    SQUARE_API_BASE_URL = os.getenv('SQUARE_API_BASE_URL', 'https://connect.squareup.com')
    SQUARE_API_VERSION = os.getenv('SQUARE_API_VERSION', '2025-01-23')
    SQUARE_HTTP_TIMEOUT = float(os.getenv('SQUARE_HTTP_TIMEOUT', '30'))

    # Offer lookups are read on every line item, cache them briefly
    OFFER_CACHE_TIMEOUT = int(os.getenv('OFFER_CACHE_TIMEOUT', '300'))

    # Discount outbox drain
    DISCOUNT_OUTBOX_MAX_ATTEMPTS = int(os.getenv('DISCOUNT_OUTBOX_MAX_ATTEMPTS', '5'))
    DISCOUNT_OUTBOX_BATCH_SIZE = int(os.getenv('DISCOUNT_OUTBOX_BATCH_SIZE', '50'))

    # A discount covering this share of the expected reward value counts as a redemption
    REDEMPTION_DISCOUNT_MATCH_RATIO = 0.95


class DevelopmentConfig(BaseConfig):
    """Development configuration."""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///punchcard_dev.db'  # SQLite fallback for local dev
    )


class ProductionConfig(BaseConfig):
    """Production configuration."""
    DEBUG = False

    _db_url = os.getenv('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # SQLAlchemy requires postgresql:// not postgres://
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = _db_url

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 5,
        'pool_recycle': 300,
        'pool_pre_ping': True,
    }

    _secret_key = os.getenv('SECRET_KEY', '')

    @classmethod
    def validate_secret_key(cls) -> str:
        """
        Validate SECRET_KEY in production environment.

        Raises:
            RuntimeError: If SECRET_KEY is missing, empty, or too short
        """
        if not cls._secret_key:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY environment variable is not set!\n"
                "Production deployments MUST have a secure SECRET_KEY."
            )

        insecure_patterns = ['dev', 'change', 'default', 'test', 'secret', 'password']
        lower_key = cls._secret_key.lower()
        for pattern in insecure_patterns:
            if pattern in lower_key:
                raise RuntimeError(
                    f"CRITICAL: SECRET_KEY contains '{pattern}' which suggests it's not secure!"
                )

        if len(cls._secret_key) < 32:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY is too short (minimum 32 characters required)!"
            )

        return cls._secret_key

    SECRET_KEY = _secret_key  # Validated at app startup


class TestingConfig(BaseConfig):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQUARE_API_BASE_URL = 'https://square.test'


config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}


def get_config(config_name: str = 'development'):
    """Get configuration class by name."""
    return config_map.get(config_name, DevelopmentConfig)


def validate_config(config_name: str = 'development') -> None:
    """
    Validate configuration before app startup.

    Args:
        config_name: The configuration environment name

    Raises:
        RuntimeError: If validation fails in production
    """
    if config_name == 'production':
        ProductionConfig.validate_secret_key()
