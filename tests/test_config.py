"""Tests for centralized configuration constants.

Validates defaults and environment variable parsing helpers.
"""

import os
from unittest.mock import patch


class TestRenderingDefaults:
    def test_edit_throttle_default(self):
        from relay.config import EDIT_THROTTLE_SECONDS

        assert EDIT_THROTTLE_SECONDS == 0.3

    def test_stream_defaults(self):
        from relay.config import STREAM_MAX_CHARS, STREAM_MIN_CHARS, STREAM_THROTTLE_SECONDS

        assert STREAM_THROTTLE_SECONDS == 0.8
        assert STREAM_MIN_CHARS == 30
        assert STREAM_MAX_CHARS == 3900

    def test_queue_capacity_default(self):
        from relay.config import EVENT_QUEUE_CAPACITY

        assert EVENT_QUEUE_CAPACITY == 5

    def test_gateway_defaults(self):
        from relay.config import EVENTS_PATH, PORT

        assert PORT == 3000
        assert EVENTS_PATH == "/events"


class TestEnvHelpers:
    def test_int_env_override(self):
        from relay.config import _get_int_env

        with patch.dict(os.environ, {"EDIT_THROTTLE_MS": "500"}):
            assert _get_int_env("EDIT_THROTTLE_MS", 300) == 500

    def test_int_env_invalid_falls_back(self):
        from relay.config import _get_int_env

        with patch.dict(os.environ, {"EDIT_THROTTLE_MS": "fast"}):
            assert _get_int_env("EDIT_THROTTLE_MS", 300) == 300

    def test_float_env(self):
        from relay.config import _get_float_env

        with patch.dict(os.environ, {"HEARTBEAT_INTERVAL_SECONDS": "2.5"}):
            assert _get_float_env("HEARTBEAT_INTERVAL_SECONDS", 0.0) == 2.5
        with patch.dict(os.environ, {"HEARTBEAT_INTERVAL_SECONDS": "soon"}):
            assert _get_float_env("HEARTBEAT_INTERVAL_SECONDS", 0.0) == 0.0

    def test_bool_env(self):
        from relay.config import _get_bool_env

        for raw in ("1", "true", "YES", "on"):
            with patch.dict(os.environ, {"STREAMING_ENABLED": raw}):
                assert _get_bool_env("STREAMING_ENABLED", False) is True
        with patch.dict(os.environ, {"STREAMING_ENABLED": "0"}):
            assert _get_bool_env("STREAMING_ENABLED", True) is False

    def test_unset_env_uses_default(self):
        from relay.config import _get_bool_env, _get_int_env

        with patch.dict(os.environ, {}, clear=True):
            assert _get_int_env("NOT_SET_ANYWHERE", 7) == 7
            assert _get_bool_env("NOT_SET_ANYWHERE", True) is True
