"""Tests for sysmoni.config."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

from sysmoni.config import (
    DEFAULT_CONFIG,
    Config,
    _deep_merge,
    apply_env,
    dump_default_config,
    load_config,
    parse_interval,
)


class TestLoadConfigDefaults:
    def test_defaults_returned_when_no_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("sysmoni.config._DEFAULT_PATH", tmp_path / "missing.toml")
        cfg = load_config(None)
        assert cfg["interval"] == 1.0
        assert cfg["sort"] == "cpu"
        assert "cpu_percent" in cfg["thresholds"]

    def test_all_default_keys_present(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("sysmoni.config._DEFAULT_PATH", tmp_path / "missing.toml")
        cfg = load_config(None)
        assert set(cfg.keys()) == set(DEFAULT_CONFIG.keys())

    def test_default_location_used(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        default = tmp_path / "config.toml"
        default.write_text('sort = "mem"\n')
        monkeypatch.setattr("sysmoni.config._DEFAULT_PATH", default)
        assert load_config(None)["sort"] == "mem"

    def test_invalid_default_location_ignored(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        default = tmp_path / "config.toml"
        default.write_text("this is [not toml\n")
        monkeypatch.setattr("sysmoni.config._DEFAULT_PATH", default)
        cfg = load_config(None)
        assert cfg["sort"] == "cpu"
        assert "ignoring invalid TOML" in capsys.readouterr().err


class TestTomlOverlay:
    def test_overrides_threshold(self, tmp_path: Path) -> None:
        toml_file = tmp_path / "config.toml"
        toml_file.write_text(
            "[thresholds.cpu_percent]\nwarning = 70.0\ncritical = 90.0\n"
        )
        cfg = load_config(toml_file)
        assert cfg["thresholds"]["cpu_percent"]["warning"] == 70.0
        assert cfg["thresholds"]["cpu_percent"]["critical"] == 90.0
        # Other thresholds remain at defaults
        assert cfg["thresholds"]["ram_percent"]["warning"] == 85.0

    def test_overrides_scalar(self, tmp_path: Path) -> None:
        toml_file = tmp_path / "config.toml"
        toml_file.write_text('interval = 2.5\nfilter = "python"\ngpu = false\n')
        cfg = load_config(toml_file)
        assert cfg["interval"] == 2.5
        assert cfg["filter"] == "python"
        assert cfg["gpu"] is False
        assert cfg["battery"] is True


class TestLoadConfigErrors:
    def test_missing_explicit_path_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc:
            load_config(tmp_path / "nope.toml")
        assert exc.value.code == 1

    def test_invalid_toml_exits(self, tmp_path: Path) -> None:
        toml_file = tmp_path / "bad.toml"
        toml_file.write_text("interval = = 1\n")
        with pytest.raises(SystemExit) as exc:
            load_config(toml_file)
        assert exc.value.code == 1


class TestDeepMerge:
    def test_nested_dicts_merged(self) -> None:
        base = {"a": {"x": 1, "y": 2}, "b": 3}
        merged = _deep_merge(base, {"a": {"y": 20}})
        assert merged == {"a": {"x": 1, "y": 20}, "b": 3}

    def test_base_not_mutated(self) -> None:
        base = {"a": {"x": 1}}
        _deep_merge(base, {"a": {"x": 2}})
        assert base == {"a": {"x": 1}}

    def test_scalar_replaces_dict(self) -> None:
        assert _deep_merge({"a": {"x": 1}}, {"a": 5}) == {"a": 5}


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("1s", 1.0),
        ("500ms", 0.5),
        ("2", 2.0),
        ("1.5", 1.5),
        ("1m", 60.0),
        ("1h", 3600.0),
        (" 250ms ", 0.25),
        ("fast", 7.0),
        ("", 7.0),
        ("-1s", 7.0),
    ],
)
def test_parse_interval(text: str, expected: float) -> None:
    assert parse_interval(text, 7.0) == pytest.approx(expected)


class TestApplyEnv:
    def test_interval_override(self) -> None:
        cfg = apply_env(dict(DEFAULT_CONFIG), {"SRPS_SYSMONI_INTERVAL": "250ms"})
        assert cfg["interval"] == pytest.approx(0.25)

    def test_bad_interval_keeps_previous(self) -> None:
        cfg = apply_env(dict(DEFAULT_CONFIG, interval=3.0), {"SRPS_SYSMONI_INTERVAL": "soon"})
        assert cfg["interval"] == 3.0

    def test_disable_probes(self) -> None:
        cfg = apply_env(dict(DEFAULT_CONFIG), {"SRPS_SYSMONI_GPU": "0", "SRPS_SYSMONI_BATT": "0"})
        assert cfg["gpu"] is False
        assert cfg["battery"] is False

    def test_non_zero_leaves_probes_on(self) -> None:
        cfg = apply_env(dict(DEFAULT_CONFIG), {"SRPS_SYSMONI_GPU": "1"})
        assert cfg["gpu"] is True

    def test_json_file(self) -> None:
        cfg = apply_env(dict(DEFAULT_CONFIG), {"SRPS_SYSMON_JSON_FILE": "/tmp/out.ndjson"})
        assert cfg["json_file"] == "/tmp/out.ndjson"

    def test_input_not_mutated(self) -> None:
        base = dict(DEFAULT_CONFIG)
        apply_env(base, {"SRPS_SYSMONI_GPU": "0"})
        assert base["gpu"] is True


class TestConfigFromMapping:
    def test_defaults(self) -> None:
        cfg = Config.from_mapping(DEFAULT_CONFIG)
        assert cfg.interval == 1.0
        assert cfg.sort == "cpu"
        assert cfg.enable_gpu is True
        assert cfg.enable_battery is True
        assert cfg.threshold("cpu_percent") == 80.0
        assert cfg.threshold("cpu_percent", "critical") == 95.0

    def test_probe_keys_renamed(self) -> None:
        cfg = Config.from_mapping(_deep_merge(DEFAULT_CONFIG, {"gpu": False, "battery": False}))
        assert cfg.enable_gpu is False
        assert cfg.enable_battery is False

    def test_invalid_sort_falls_back(self) -> None:
        cfg = Config.from_mapping(_deep_merge(DEFAULT_CONFIG, {"sort": "bogus"}))
        assert cfg.sort == "cpu"

    def test_string_interval_parsed(self) -> None:
        cfg = Config.from_mapping(_deep_merge(DEFAULT_CONFIG, {"interval": "500ms"}))
        assert cfg.interval == pytest.approx(0.5)

    def test_partial_thresholds_keep_defaults(self) -> None:
        cfg = Config.from_mapping({"thresholds": {"cpu_temp": {"warning": 70.0}}})
        assert cfg.threshold("cpu_temp") == 70.0
        assert cfg.threshold("cpu_temp", "critical") == 90.0
        assert cfg.threshold("ram_percent") == 85.0

    def test_unknown_metric_threshold(self) -> None:
        assert Config().threshold("nonexistent") == 100.0


class TestDumpDefaultConfig:
    def test_valid_toml(self) -> None:
        output = dump_default_config()
        parsed = tomllib.loads(output)
        assert parsed["interval"] == 1.0
        assert parsed["sort"] == "cpu"
        assert parsed["gpu"] is True

    def test_contains_all_thresholds(self) -> None:
        parsed = tomllib.loads(dump_default_config())
        for metric in DEFAULT_CONFIG["thresholds"]:
            assert metric in parsed["thresholds"]

    def test_round_trip_matches_defaults(self) -> None:
        parsed = tomllib.loads(dump_default_config())
        assert _deep_merge(DEFAULT_CONFIG, parsed) == DEFAULT_CONFIG
