"""Pytest configuration."""

import os

import pytest

# Ensure test environment
os.environ.setdefault("SL_TRACKING_SIGNING_SECRET", "test-tracking-secret")
os.environ.setdefault("SL_DATABASE_URL", "sqlite+aiosqlite:///test.db")
os.environ.setdefault("SL_DEBUG", "true")
os.environ.setdefault("SL_META_PIXEL_ID", "env-pixel")
os.environ.setdefault("SL_FACEBOOK_ACCESS_TOKEN", "env-token")
os.environ.setdefault("SL_META_ADS_READ_TOKEN", "")


@pytest.fixture(autouse=True)
def _reset_process_state():
    from smartlink.core.credentials import clear_credential_cache
    from smartlink.middleware.rate_limit import reset_rate_limits

    clear_credential_cache()
    reset_rate_limits()
    yield
    clear_credential_cache()
    reset_rate_limits()
