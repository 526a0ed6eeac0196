"""Tests for the typed encoding of admin settings."""

import pytest

from models import AdminSetting
from triangle.settings import SettingsHelper


class TestSettingsCodec:
    """Values survive the string column with their type."""

    @pytest.mark.parametrize("value,stored,kind", [
        (True, "true", "boolean"),
        (False, "false", "boolean"),
        (12, "12", "number"),
        (0.5, "0.5", "number"),
        ({"a": 1}, '{"a": 1}', "json"),
        ("TWallet", "TWallet", "string"),
    ])
    def test_encode(self, value, stored, kind):
        assert SettingsHelper._encode(value) == (stored, kind)

    def test_whole_numbers_decode_as_int(self):
        setting = AdminSetting(key="limit", value="3.0", type="number")
        assert SettingsHelper._decode(setting) == 3

    def test_broken_json_falls_back_to_text(self):
        setting = AdminSetting(key="blob", value="{oops", type="json")
        assert SettingsHelper._decode(setting) == "{oops"

    def test_boolean(self):
        assert SettingsHelper._decode(AdminSetting(key="x", value="true", type="boolean")) is True
        assert SettingsHelper._decode(AdminSetting(key="x", value="no", type="boolean")) is False
