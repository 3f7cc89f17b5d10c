"""
Tests for application configuration and settings validation.
"""

import os
import pytest
from unittest.mock import patch


def test_settings_loads_defaults():
    """Settings should load with sensible defaults in development."""
    # Clear the lru_cache so we get a fresh Settings instance
    from app.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
        "SECRET_KEY": "change-me-in-production",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.is_production is False
        assert settings.openai_model == "gpt-4o"
        get_settings.cache_clear()


def test_settings_cors_origin_list():
    """CORS origins string should be split into a list."""
    from app.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
        "CORS_ORIGINS": "http://localhost:3000, http://example.com",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        origins = settings.cors_origin_list
        assert len(origins) == 2
        assert "http://localhost:3000" in origins
        assert "http://example.com" in origins
        get_settings.cache_clear()


def test_production_rejects_default_secret():
    """Production mode should reject the default secret key."""
    from app.config import get_settings, Settings
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="SECRET_KEY must be set"):
        Settings(
            environment="production",
            secret_key="change-me-in-production",
            database_url="postgresql+asyncpg://prod-host/db",
        )
    get_settings.cache_clear()


def test_production_accepts_real_secret():
    """Production mode should accept a real secret key."""
    from app.config import Settings
    settings = Settings(
        environment="production",
        secret_key="a-real-secret-key-that-is-not-the-default",
        encryption_key="a-fernet-key",
        database_url="postgresql+asyncpg://prod-host/db",
    )
    assert settings.is_production is True
    assert settings.secret_key == "a-real-secret-key-that-is-not-the-default"


def test_engine_defaults():
    """Burn-in, concurrency and threshold defaults for the recommendation engine."""
    from app.config import Settings
    settings = Settings(database_url="postgresql+asyncpg://localhost/test")
    assert settings.burn_in_days == 7
    assert settings.ai_max_concurrency >= 1
    assert settings.default_confidence_threshold == 70


def test_engine_settings_validated():
    """Out-of-range engine settings are rejected at startup."""
    from app.config import Settings
    with pytest.raises(ValueError, match="BURN_IN_DAYS"):
        Settings(burn_in_days=-1)
    with pytest.raises(ValueError, match="AI_MAX_CONCURRENCY"):
        Settings(ai_max_concurrency=0)
    with pytest.raises(ValueError, match="DEFAULT_CONFIDENCE_THRESHOLD"):
        Settings(default_confidence_threshold=101)


def test_postgres_url_rewritten_for_asyncpg():
    from app.config import Settings
    settings = Settings(database_url="postgresql://user:pw@db.example.com/engine")
    assert settings.database_url.startswith("postgresql+asyncpg://")


def test_production_requires_encryption_key():
    from app.config import Settings
    with pytest.raises(ValueError, match="ENCRYPTION_KEY"):
        Settings(
            environment="production",
            secret_key="a-real-secret-key-that-is-not-the-default",
            encryption_key="",
            database_url="postgresql+asyncpg://prod-host/db",
        )
