"""
Unit tests for the Supabase-backed user directory.
"""

from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from app.infrastructure.exceptions import DatabaseError
from app.infrastructure.users.user_directory import SupabaseUserDirectory, _extract_user_id


def _client_returning(data) -> MagicMock:
    client = MagicMock()
    client.rpc.return_value.execute.return_value = MagicMock(data=data)
    return client


class TestExtractUserId:

    @pytest.mark.parametrize("data, expected", [
        ("11111111-2222-3333-4444-555555555555", "11111111-2222-3333-4444-555555555555"),
        ([{"id": "u1"}], "u1"),
        ({"user_id": "u2"}, "u2"),
        ({"get_user_id_by_email": "u3"}, "u3"),
        (None, None),
        ([], None),
        ({"id": None}, None),
    ])
    def test_shapes(self, data, expected):
        assert _extract_user_id(data) == expected


class TestSupabaseUserDirectory:

    async def test_calls_rpc_with_email(self):
        client = _client_returning("u1")
        directory = SupabaseUserDirectory(client=client)

        assert await directory.get_user_id_by_email("a@b.com") == "u1"
        client.rpc.assert_called_once_with("get_user_id_by_email", {"user_email": "a@b.com"})

    async def test_unknown_email(self):
        directory = SupabaseUserDirectory(client=_client_returning(None))
        assert await directory.get_user_id_by_email("nobody@b.com") is None

    async def test_rpc_failure_raises_database_error(self):
        client = MagicMock()
        client.rpc.return_value.execute.side_effect = APIError({"message": "boom", "code": "500"})
        directory = SupabaseUserDirectory(client=client)

        with pytest.raises(DatabaseError) as exc_info:
            await directory.get_user_id_by_email("a@b.com")
        assert exc_info.value.details["operation"] == "rpc:get_user_id_by_email"
