import json
import logging

import pytest

from picoscope_control.config import (LIBRARY_ENV_VAR, AcquisitionConfig, ChannelConfig,
                                      TriggerConfig, library_path, load_config, save_config,
                                      setup_logging)


def test_defaults_are_valid():
    assert AcquisitionConfig().validate() == (True, "OK")


@pytest.mark.parametrize("changes, message", [
    ({"mode": "burst"}, "Mode"),
    ({"channels": []}, "At least one channel"),
    ({"channels": [ChannelConfig("A"), ChannelConfig("a")]}, "listed twice"),
    ({"channels": [ChannelConfig("Q")]}, "Unknown channel"),
    ({"channels": [ChannelConfig("A", coupling="XX")]}, "coupling"),
    ({"channels": [ChannelConfig(9)]}, "Unknown channel"),
    ({"time_units": "HOURS"}, "time units"),
    ({"indexing": "ring"}, "Indexing"),
    ({"pre_trigger": -1}, "negative"),
    ({"downsample_ratio": 0}, "ratio"),
    ({"ratio_mode": "MEDIAN"}, "ratio mode"),
    ({"file_format": "xlsx"}, "format"),
    ({"trigger": TriggerConfig(source="B")}, "not an enabled channel"),
    ({"trigger": TriggerConfig(direction="SIDEWAYS")}, "direction"),
])
def test_invalid_settings(changes, message):
    config = AcquisitionConfig(**changes)
    valid, text = config.validate()
    assert not valid
    assert message.lower() in text.lower()


def test_block_mode_needs_samples():
    valid, _ = AcquisitionConfig(mode="block", samples=0).validate()
    assert not valid


def test_save_and_load(tmp_path):
    config = AcquisitionConfig(
        mode="block", channels=[ChannelConfig("A", 5000, "AC"), ChannelConfig("C")],
        trigger=TriggerConfig("C", 250, "FALLING"), samples=2048, output="x.tsv",
        file_format="tsv")
    path = save_config(config, tmp_path / "nested" / "capture.json")
    loaded = load_config(path)
    assert loaded == config
    assert loaded.channels[1].index == 2


def test_load_accepts_channel_letters(tmp_path):
    path = tmp_path / "capture.json"
    path.write_text(json.dumps({"mode": "stream", "channels": ["A", "B"], "post_trigger": 500}))
    config = load_config(path)
    assert [channel.index for channel in config.channels] == [0, 1]
    assert config.post_trigger == 500


def test_unknown_keys_rejected():
    with pytest.raises(ValueError):
        AcquisitionConfig.from_dict({"mode": "stream", "colour": "blue"})


def test_library_path_from_environment(monkeypatch):
    monkeypatch.delenv(LIBRARY_ENV_VAR, raising=False)
    assert library_path() is None
    monkeypatch.setenv(LIBRARY_ENV_VAR, "/opt/picoscope/lib/libps5000a.so")
    assert library_path() == "/opt/picoscope/lib/libps5000a.so"


def test_setup_logging_with_file(tmp_path, restore_root_logger):
    log_file = tmp_path / "capture.log"
    logger = setup_logging("DEBUG", log_file)
    assert logger.level == logging.DEBUG
    logging.getLogger("AcquisitionController").info("armed")
    for handler in logger.handlers:
        handler.flush()
    assert " - AcquisitionController - INFO - armed" in log_file.read_text()
