"""
Unit tests for authentication.
"""

from datetime import timedelta

import pytest
from fastapi import HTTPException

from jobqueue.api.auth import (
    create_access_token,
    decode_token,
    validate_api_key,
)

TEST_ADMIN_API_KEY = "test-admin-key"


class TestAuth:
    """Tests for authentication utilities."""

    def test_create_access_token(self):
        """Test JWT token creation."""
        token = create_access_token(client_id="ops")

        assert isinstance(token, str)
        assert len(token) > 0

    def test_decode_valid_token(self):
        """Test decoding a valid token."""
        token = create_access_token(client_id="ops")

        token_data = decode_token(token)

        assert token_data.client_id == "ops"
        assert token_data.exp is not None

    def test_decode_expired_token(self):
        """Test decoding an expired token raises error."""
        token = create_access_token(
            client_id="ops",
            expires_delta=timedelta(hours=-1),
        )

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)

        assert exc_info.value.status_code == 401

    def test_decode_invalid_token(self):
        """Test decoding an invalid token raises error."""
        with pytest.raises(HTTPException) as exc_info:
            decode_token("invalid-token")

        assert exc_info.value.status_code == 401

    def test_validate_api_key_valid(self):
        assert validate_api_key(TEST_ADMIN_API_KEY) is True

    def test_validate_api_key_wrong(self):
        assert validate_api_key("wrong-key") is False
        assert validate_api_key("") is False
