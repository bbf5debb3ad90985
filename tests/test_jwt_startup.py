"""
tests/test_jwt_startup — Credential Checks in pulse.api.deps
=============================================================
The API must refuse to import when JWT_SECRET is missing, blank, too
short, or a known weak default.  Adapter and admin guards are exercised
directly, without a running app.
"""

from __future__ import annotations

import importlib
import os
from unittest.mock import patch

import jwt
import pytest
from fastapi import HTTPException


def _reload_deps():
    """Re-import the module so _load_jwt_secret() runs against the patched env."""
    import pulse.api.deps as deps_mod

    importlib.reload(deps_mod)
    return deps_mod


class TestJWTSecretValidation:
    @pytest.fixture(autouse=True)
    def _restore_jwt_secret(self):
        """Put JWT_SECRET back and reload so later tests see a valid module."""
        original = os.environ.get("JWT_SECRET")
        yield
        if original is not None:
            os.environ["JWT_SECRET"] = original
        else:
            os.environ.pop("JWT_SECRET", None)
        try:
            _reload_deps()
        except RuntimeError:
            pass  # test env may not have a valid secret set yet

    def test_rejects_missing_secret(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("JWT_SECRET", None)
            with pytest.raises(RuntimeError, match="JWT_SECRET environment variable is not set"):
                _reload_deps()

    def test_rejects_empty_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": ""}):
            with pytest.raises(RuntimeError, match="not set"):
                _reload_deps()

    @pytest.mark.parametrize("weak", ["pulse-dev-secret-change-me", "change-me", "secret"])
    def test_rejects_known_weak_defaults(self, weak):
        with patch.dict(os.environ, {"JWT_SECRET": weak}):
            with pytest.raises(RuntimeError, match="known weak default"):
                _reload_deps()

    def test_rejects_short_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": "s" * 31}):
            with pytest.raises(RuntimeError, match="too short"):
                _reload_deps()

    def test_accepts_strong_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": "k" * 64}):
            assert _reload_deps().JWT_SECRET == "k" * 64


class TestGuards:
    def test_admin_payload_returned(self):
        from pulse.api.deps import JWT_ALGORITHM, JWT_SECRET, get_current_admin

        token = jwt.encode({"sub": "1", "is_admin": True}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        assert get_current_admin(f"Bearer {token}")["sub"] == "1"

    def test_token_signed_with_other_secret(self):
        from pulse.api.deps import JWT_ALGORITHM, get_current_admin

        token = jwt.encode({"sub": "1", "is_admin": True}, "z" * 40, algorithm=JWT_ALGORITHM)
        with pytest.raises(HTTPException) as exc:
            get_current_admin(f"Bearer {token}")
        assert exc.value.status_code == 401

    def test_adapter_key_match(self, monkeypatch):
        from pulse.api.deps import require_adapter_key

        monkeypatch.setenv("ADAPTER_API_KEY", "adapter-secret")
        assert require_adapter_key("adapter-secret") is None

    def test_adapter_key_missing_header(self, monkeypatch):
        from pulse.api.deps import require_adapter_key

        monkeypatch.setenv("ADAPTER_API_KEY", "adapter-secret")
        with pytest.raises(HTTPException) as exc:
            require_adapter_key(None)
        assert exc.value.status_code == 401
