"""Tests for logging configuration."""

import json
import logging

from src.config.logging import JsonFormatter, configure_logging


class TestJsonFormatter:
    def test_merges_extra_dict(self):
        record = logging.LogRecord("src.test", logging.WARNING, __file__, 1, "token reuse %s", ("fam-1",), None)
        record.extra = {"client_id": "ec_abc"}

        payload = json.loads(JsonFormatter().format(record))
        assert payload["level"] == "WARNING"
        assert payload["logger"] == "src.test"
        assert payload["msg"] == "token reuse fam-1"
        assert payload["client_id"] == "ec_abc"


class TestConfigureLogging:
    def test_replaces_its_own_handler(self):
        root = logging.getLogger()
        original_level = root.level
        try:
            configure_logging(level="debug", log_format="json")
            configure_logging(level="debug", log_format="text")

            ours = [h for h in root.handlers if h.get_name() == "campus-oidc"]
            assert len(ours) == 1
            assert not isinstance(ours[0].formatter, JsonFormatter)
            assert root.level == logging.DEBUG
        finally:
            root.setLevel(original_level)
