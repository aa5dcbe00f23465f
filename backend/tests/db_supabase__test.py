"""
Tests for lazy Supabase client creation
"""
import base64
import json
from unittest.mock import patch

import pytest

from backend import db_supabase
from backend.config import get_settings


def _key(role):
    payload = base64.urlsafe_b64encode(json.dumps({"role": role}).encode()).decode().rstrip("=")
    return f"header.{payload}.signature"


@pytest.fixture(autouse=True)
def fresh_clients():
    db_supabase.reset_clients()
    yield
    db_supabase.reset_clients()


def test_jwt_role():
    assert db_supabase._jwt_role(_key("service_role")) == "service_role"
    assert db_supabase._jwt_role("not-a-jwt") is None


def test_admin_client_is_cached(monkeypatch):
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", _key("service_role"))
    get_settings.cache_clear()
    with patch("backend.db_supabase.create_client") as mock_create:
        first = db_supabase.get_supabase_admin()
        second = db_supabase.get_supabase_admin()

    assert first is second
    mock_create.assert_called_once_with("https://example.supabase.co", _key("service_role"))


def test_admin_client_requires_configuration(monkeypatch):
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "")
    get_settings.cache_clear()
    with pytest.raises(Exception, match="SUPABASE_SERVICE_ROLE_KEY"):
        db_supabase.get_supabase_admin()
