"""
tests/test_jwt_startup — Admin JWT Secret & Token Checks
=========================================================
The admin API refuses to import when JWT_SECRET is missing, blank, too
short, or a known weak default; tokens signed with it gate /api/admin.
"""

from __future__ import annotations

import importlib
import os
from unittest.mock import patch

import jwt
import pytest
from fastapi import HTTPException


def _reload_deps():
    import kudos.api.deps as deps_mod

    importlib.reload(deps_mod)
    return deps_mod


class TestJWTSecretValidation:
    @pytest.fixture(autouse=True)
    def _restore_jwt_secret(self):
        original = os.environ.get("JWT_SECRET")
        yield
        if original is not None:
            os.environ["JWT_SECRET"] = original
        else:
            os.environ.pop("JWT_SECRET", None)
        try:
            _reload_deps()
        except RuntimeError:
            pass  # no valid secret in this environment

    def test_rejects_missing_secret(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("JWT_SECRET", None)
            with pytest.raises(RuntimeError, match="JWT_SECRET environment variable is not set"):
                _reload_deps()

    def test_rejects_empty_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": ""}):
            with pytest.raises(RuntimeError, match="not set"):
                _reload_deps()

    @pytest.mark.parametrize("weak", ["kudos-dev-secret-change-me", "change-me", "secret"])
    def test_rejects_known_weak_defaults(self, weak):
        with patch.dict(os.environ, {"JWT_SECRET": weak}):
            with pytest.raises(RuntimeError, match="known weak default"):
                _reload_deps()

    def test_rejects_short_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": "tooshort"}):
            with pytest.raises(RuntimeError, match="too short"):
                _reload_deps()

    def test_accepts_strong_secret(self):
        good_secret = "k" * 64
        with patch.dict(os.environ, {"JWT_SECRET": good_secret}):
            assert _reload_deps().JWT_SECRET == good_secret


class TestCurrentAdmin:
    def _token(self, **claims) -> str:
        from kudos.api.deps import JWT_ALGORITHM, JWT_SECRET

        return jwt.encode({"sub": "1", **claims}, JWT_SECRET, algorithm=JWT_ALGORITHM)

    def test_valid_admin(self):
        from kudos.api.deps import get_current_admin

        payload = get_current_admin(f"Bearer {self._token(is_admin=True)}")
        assert payload["sub"] == "1"

    @pytest.mark.parametrize("header,code", [
        (None, 401),
        ("Token abc", 401),
        ("Bearer not-a-jwt", 401),
    ])
    def test_rejected(self, header, code):
        from kudos.api.deps import get_current_admin

        with pytest.raises(HTTPException) as exc:
            get_current_admin(header)
        assert exc.value.status_code == code

    def test_non_admin_forbidden(self):
        from kudos.api.deps import get_current_admin

        with pytest.raises(HTTPException) as exc:
            get_current_admin(f"Bearer {self._token(is_admin=False)}")
        assert exc.value.status_code == 403

    def test_wrong_secret(self):
        from kudos.api.deps import JWT_ALGORITHM, get_current_admin

        forged = jwt.encode({"sub": "1", "is_admin": True}, "z" * 64, algorithm=JWT_ALGORITHM)
        with pytest.raises(HTTPException) as exc:
            get_current_admin(f"Bearer {forged}")
        assert exc.value.status_code == 401
