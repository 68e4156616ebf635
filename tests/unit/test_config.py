import json
from pathlib import Path

import pytest

from herd.config import MergedSettings


@pytest.fixture
def overrides_file(tmp_path):
    return tmp_path / "overrides.json"


class TestMergedSettings:
    """Test the merge of defaults and JSON overrides."""

    def test_defaults_without_overrides(self, overrides_file):
        settings = MergedSettings(overrides_file)

        assert isinstance(settings.SPAWN_RETRY_LIMIT, int)
        assert "{python}" in settings.DEFAULT_WORKER_COMMAND
        assert isinstance(settings.PID_FILE_PATH, Path)

    def test_unknown_attribute(self, overrides_file):
        settings = MergedSettings(overrides_file)

        with pytest.raises(AttributeError):
            settings.NOT_A_SETTING

    def test_modifiable_override_is_coerced(self, overrides_file):
        overrides_file.write_text(json.dumps({"WORKER_COUNT": "4", "DRAIN_TIMEOUT_SECONDS": 2}))

        settings = MergedSettings(overrides_file)

        assert settings.WORKER_COUNT == 4
        assert settings.DRAIN_TIMEOUT_SECONDS == 2.0
        assert isinstance(settings.DRAIN_TIMEOUT_SECONDS, float)

    def test_non_modifiable_and_unknown_keys_are_ignored(self, overrides_file):
        default = MergedSettings(overrides_file).BIND_HOST
        overrides_file.write_text(json.dumps({"BIND_HOST": "0.0.0.0", "NOPE": 1}))

        settings = MergedSettings(overrides_file)

        assert settings.BIND_HOST == default
        assert settings.get("NOPE") is None

    def test_bad_value_keeps_default(self, overrides_file):
        default = MergedSettings(overrides_file).MAX_WORKERS
        overrides_file.write_text(json.dumps({"MAX_WORKERS": "many"}))

        assert MergedSettings(overrides_file).MAX_WORKERS == default

    def test_corrupt_overrides_file(self, overrides_file):
        overrides_file.write_text("{")

        settings = MergedSettings(overrides_file)

        assert settings.get("WORKER_COMMAND") is not None

    def test_save_overrides_filters_keys(self, overrides_file):
        settings = MergedSettings(overrides_file)

        settings.save_overrides({"WORKER_COUNT": 5, "BIND_HOST": "0.0.0.0"})

        assert json.loads(overrides_file.read_text()) == {"WORKER_COUNT": 5}
        assert MergedSettings(overrides_file).WORKER_COUNT == 5

    def test_as_dict_is_a_copy(self, overrides_file):
        settings = MergedSettings(overrides_file)
        before = settings.WORKER_COUNT

        settings.as_dict()["WORKER_COUNT"] = before + 1

        assert settings.WORKER_COUNT == before
