"""Tests for configuration loading and server overrides."""

import json
import tempfile
from pathlib import Path
from unittest.mock import patch

from grifo_sync.config import Config, SyncSettings


class TestConfig:
    """Tests for Config."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = Path(self.temp_dir) / "config.json"

    def test_defaults(self):
        config = Config()

        assert config.sync.batch_size == 5
        assert config.sync.max_retries == 3
        assert config.sync.request_timeout == 15
        assert config.show_alerts is True

    def test_load_missing_file_uses_defaults(self):
        config = Config.load(self.path)

        assert config.sync == SyncSettings()

    def test_save_and_load(self):
        config = Config(empresa_id="empresa-1", vistoriador_id="vist-1", token="abc")
        config.sync.batch_size = 3

        config.save(self.path)
        loaded = Config.load(self.path)

        assert loaded.empresa_id == "empresa-1"
        assert loaded.vistoriador_id == "vist-1"
        assert loaded.sync.batch_size == 3

    def test_load_ignores_unknown_keys(self):
        self.path.write_text(
            json.dumps({"empresa_id": "e", "legacy": True, "sync": {"batch_size": 2, "old": 1}})
        )

        config = Config.load(self.path)

        assert config.empresa_id == "e"
        assert config.sync.batch_size == 2

    def test_broken_file_falls_back_to_defaults(self):
        self.path.write_text("{not json")

        config = Config.load(self.path)

        assert config.empresa_id is None

    @patch.dict("os.environ", {"GRIFO_API_URL": "https://grifo.example/api"})
    def test_env_overrides_api_url(self):
        assert Config.load(self.path).api_url == "https://grifo.example/api"

    def test_update_from_server_clamps_values(self):
        config = Config()

        config.update_from_server(
            {"sync": {"sync_interval_seconds": 10, "batch_size": 50, "max_retries": -1}}
        )

        assert config.sync.interval_seconds == 60
        assert config.sync.batch_size == 10
        assert config.sync.max_retries == 0

    def test_update_from_server_ignores_missing_keys(self):
        config = Config()

        config.update_from_server({})

        assert config.sync == SyncSettings()
