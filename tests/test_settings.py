"""Tests for patchbay.core.settings."""

import json

from patchbay.core.settings import DEFAULTS, Settings


class TestSettings:

    def test_defaults_without_file(self, tmp_path):
        s = Settings(tmp_path / "missing.json")
        assert s.history_size == DEFAULTS["history_size"] == 50
        assert s.paste_offset == 50.0

    def test_file_overrides(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"history_size": 3, "max_zoom": 4}))
        s = Settings(path)
        assert s.history_size == 3
        assert s.max_zoom == 4.0
        assert s.min_zoom == DEFAULTS["min_zoom"]

    def test_bad_file_falls_back(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{broken")
        assert Settings(path).history_size == 50

    def test_save_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "settings.json"
        s = Settings(path)
        s.paste_offset = 12.5
        s.save()
        assert Settings(path).paste_offset == 12.5
