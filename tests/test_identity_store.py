"""
Tests for the identity store REST client and its async facade.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests

from src.common.identity_store import (
    IdentityStore,
    RecordNotFound,
    ScreenDirectory,
    ScreenRecord,
    TransientError,
    UniqueConstraintError,
)


def make_response(status_code, body=None):
    response = MagicMock()
    response.status_code = status_code
    if body is None:
        response.content = b""
        response.json.side_effect = ValueError("no body")
    else:
        response.content = json.dumps(body).encode()
        response.json.return_value = body
    return response


@pytest.fixture
def session():
    mock = MagicMock()
    mock.headers = {}
    return mock


@pytest.fixture
def directory(session):
    return ScreenDirectory("https://xyz.example.co/", "anon-key", timeout=7, session=session)


ROW = {"id": "abc", "code": "7K4P", "assigned_path": None, "name": "lobby", "location": "hall"}


class TestScreenRecord:

    def test_from_row_keeps_unknown_columns(self):
        record = ScreenRecord.from_row(ROW)
        assert record.id == "abc"
        assert record.code == "7K4P"
        assert record.assigned_path is None
        assert record.name == "lobby"
        assert record.extra == {"location": "hall"}

    def test_numeric_id_becomes_string(self):
        assert ScreenRecord.from_row({"id": 42, "code": "AAAA"}).id == "42"


class TestScreenDirectory:

    def test_session_headers(self, directory, session):
        assert session.headers["apikey"] == "anon-key"
        assert session.headers["Authorization"] == "Bearer anon-key"
        assert session.headers["Prefer"] == "return=representation"

    def test_table_url(self, directory):
        assert directory.table_url == "https://xyz.example.co/rest/v1/screens"

    def test_insert(self, directory, session):
        session.request.return_value = make_response(201, [ROW])

        record = directory.insert({"code": "7K4P"})

        assert record.id == "abc"
        session.request.assert_called_once_with(
            "POST",
            "https://xyz.example.co/rest/v1/screens",
            params=None,
            json={"code": "7K4P"},
            timeout=7,
        )

    def test_get_by_id_filters(self, directory, session):
        session.request.return_value = make_response(200, [ROW])

        directory.get_by_id("abc")

        _, kwargs = session.request.call_args
        assert kwargs["params"] == {"id": "eq.abc", "select": "*"}

    def test_get_by_code_filters(self, directory, session):
        session.request.return_value = make_response(200, [ROW])

        directory.get_by_code("7K4P")

        _, kwargs = session.request.call_args
        assert kwargs["params"]["code"] == "eq.7K4P"

    def test_update_is_patch_by_id(self, directory, session):
        session.request.return_value = make_response(200, [dict(ROW, current_page="/tv1")])

        record = directory.update("abc", {"current_page": "/tv1"})

        args, kwargs = session.request.call_args
        assert args[0] == "PATCH"
        assert kwargs["params"] == {"id": "eq.abc"}
        assert kwargs["json"] == {"current_page": "/tv1"}
        assert record.current_page == "/tv1"

    def test_empty_result_is_not_found(self, directory, session):
        session.request.return_value = make_response(200, [])
        with pytest.raises(RecordNotFound):
            directory.get_by_id("missing")

    def test_update_of_deleted_row_is_not_found(self, directory, session):
        session.request.return_value = make_response(200, [])
        with pytest.raises(RecordNotFound):
            directory.update("missing", {"last_seen": "now"})

    def test_pgrst116_is_not_found(self, directory, session):
        session.request.return_value = make_response(406, {"code": "PGRST116"})
        with pytest.raises(RecordNotFound):
            directory.get_by_id("missing")

    def test_conflict_is_unique_violation(self, directory, session):
        session.request.return_value = make_response(409, {"code": "23505"})
        with pytest.raises(UniqueConstraintError):
            directory.insert({"code": "7K4P"})

    def test_unique_code_without_409(self, directory, session):
        session.request.return_value = make_response(400, {"code": "23505"})
        with pytest.raises(UniqueConstraintError):
            directory.insert({"code": "7K4P"})

    def test_server_error_is_transient(self, directory, session):
        session.request.return_value = make_response(503)
        with pytest.raises(TransientError) as exc_info:
            directory.get_by_id("abc")
        assert exc_info.value.status_code == 503

    def test_rate_limit_is_transient(self, directory, session):
        session.request.return_value = make_response(429, {"message": "slow down"})
        with pytest.raises(TransientError):
            directory.update("abc", {})

    def test_timeout_is_transient(self, directory, session):
        session.request.side_effect = requests.Timeout("read timed out")
        with pytest.raises(TransientError):
            directory.get_by_id("abc")

    def test_connection_error_is_transient(self, directory, session):
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(TransientError):
            directory.insert({"code": "7K4P"})

    def test_single_object_body(self, directory, session):
        session.request.return_value = make_response(200, ROW)
        assert directory.get_by_id("abc").code == "7K4P"


class TestIdentityStore:

    @pytest.mark.asyncio
    async def test_calls_run_off_loop(self, directory, session):
        session.request.return_value = make_response(200, [ROW])
        store = IdentityStore(directory, MagicMock())

        record = await store.get_by_id("abc")

        assert record.code == "7K4P"

    @pytest.mark.asyncio
    async def test_errors_propagate(self, directory, session):
        session.request.return_value = make_response(200, [])
        store = IdentityStore(directory, MagicMock())

        with pytest.raises(RecordNotFound):
            await store.update("abc", {"last_seen": "now"})

    @pytest.mark.asyncio
    async def test_row_change_delivers_records(self, directory):
        realtime = MagicMock()
        realtime.subscribe_to_row_change = AsyncMock(return_value="sub")
        store = IdentityStore(directory, realtime)
        received = []

        result = await store.subscribe_to_row_change("abc", received.append)

        assert result == "sub"
        table, row_id, callback = realtime.subscribe_to_row_change.call_args[0]
        assert (table, row_id) == ("screens", "abc")
        callback({"id": "abc", "code": "7K4P", "assigned_path": "/tv1"})
        assert received[0].assigned_path == "/tv1"

    def test_channel_states_from_realtime(self, directory):
        realtime = MagicMock()
        realtime.channel_states.return_value = ["joined"]
        store = IdentityStore(directory, realtime)

        assert store.channel_states() == ["joined"]
        assert store.realtime is realtime
