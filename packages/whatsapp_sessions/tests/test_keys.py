"""
Tests for session keys and identifier validation.
"""

import re
from pathlib import Path

import pytest

from whatsapp_sessions.exceptions import ValidationError
from whatsapp_sessions.keys import SessionKey, new_instance_id, validate_instance_id, validate_token


class TestSessionKey:
    """Tests for the compound session key."""

    def test_str_is_token_underscore_instance(self):
        assert str(SessionKey("t1", "i1")) == "t1_i1"

    def test_keys_are_values(self):
        assert SessionKey("t1", "i1") == SessionKey("t1", "i1")
        assert len({SessionKey("t1", "i1"), SessionKey("t1", "i1")}) == 1

    def test_same_instance_id_for_different_tenants_are_different_keys(self):
        assert SessionKey("t1", "default") != SessionKey("t2", "default")

    def test_of_strips_and_validates(self):
        key = SessionKey.of("  t1 ", " i1")
        assert key == SessionKey("t1", "i1")

    def test_of_rejects_missing_instance(self):
        with pytest.raises(ValidationError) as exc_info:
            SessionKey.of("t1", None)
        assert exc_info.value.tenant_token == "t1"
        assert exc_info.value.kind == "validation_error"

    def test_credential_dir(self, tmp_path):
        key = SessionKey("t1", "i1")
        assert key.credential_dir(tmp_path) == Path(tmp_path) / "t1" / "i1"

    def test_keys_are_immutable(self):
        key = SessionKey("t1", "i1")
        with pytest.raises(AttributeError):
            key.tenant_token = "t2"


class TestValidation:
    """Tests for token and instance id validation."""

    @pytest.mark.parametrize("token", [None, "", "   "])
    def test_missing_token(self, token):
        with pytest.raises(ValidationError, match="token is required"):
            validate_token(token)

    @pytest.mark.parametrize("token", ["../etc", "a/b", ".hidden", "a b", "x" * 200])
    def test_token_that_is_not_a_safe_path_segment(self, token):
        with pytest.raises(ValidationError):
            validate_token(token)

    def test_valid_ids(self):
        assert validate_token("token_usuario_1") == "token_usuario_1"
        assert validate_instance_id("instance_1700000000000_abc123xyz") == "instance_1700000000000_abc123xyz"

    def test_invalid_instance_id_carries_context(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_instance_id("a/b", tenant_token="t1")
        assert exc_info.value.instance_id == "a/b"
        assert exc_info.value.tenant_token == "t1"


class TestNewInstanceId:
    def test_format(self):
        assert re.fullmatch(r"instance_\d{13}_[a-z0-9]{9}", new_instance_id())

    def test_unique(self):
        assert len({new_instance_id() for _ in range(50)}) == 50

    def test_is_a_valid_instance_id(self):
        instance_id = new_instance_id()
        assert validate_instance_id(instance_id) == instance_id
