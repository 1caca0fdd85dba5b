"""Unit tests for configuration loading, validation and CLI overrides."""

from __future__ import annotations

import pytest

from fod_monitor.cli import config_overrides, parse_args
from fod_monitor.config import PipelineConfig, load_config, merge_overrides
from fod_monitor.errors import ConfigError
from fod_monitor.pipeline.types import TaskKind


class TestPipelineConfig:
    """Tests for PipelineConfig defaults and validation."""

    def test_defaults(self):
        """Defaults match the documented values."""
        config = PipelineConfig()
        assert config.model == "./models/yolov8n.onnx"
        assert config.task is TaskKind.DETECT
        assert (config.nc, config.nk, config.nm) == (5, None, None)
        assert (config.width, config.height) == (512, 512)
        assert (config.batch, config.batch_min, config.batch_max) == (3, 1, 3)
        assert (config.conf, config.iou, config.kconf) == (0.5, 0.5, 0.5)
        assert config.cuda and not config.trt and not config.fp16
        assert config.num_destinations == 3
        config.validate()

    def test_from_dict_converts_values(self):
        """Enum, tuple and routing values are converted."""
        config = PipelineConfig.from_dict(
            {
                "task": "Pose",
                "nk": 17,
                "destinations": ["left", "right"],
                "class_names": ["bolt"],
                "routing": {"0": 2, "1": None},
            }
        )
        assert config.task is TaskKind.POSE
        assert config.destinations == ("left", "right")
        assert config.class_names == ("bolt",)
        assert config.routing == {0: 2, 1: None}

    def test_unknown_keys_ignored(self):
        """Unknown keys do not fail loading."""
        config = PipelineConfig.from_dict({"conf": 0.25, "colour": "red"})
        assert config.conf == 0.25
        assert not hasattr(config, "colour")

    @pytest.mark.parametrize(
        "values",
        [
            {"conf": 1.5},
            {"iou": -0.1},
            {"batch_min": 2, "batch": 1},
            {"batch": 4, "batch_max": 3},
            {"batch_min": 0},
            {"width": 0},
            {"task": "classify"},
            {"routing": {5: 0}},
            {"routing": {0: -1}},
            {"encoding": "tiff"},
            {"destinations": []},
            {"max_read_failures": 0},
        ],
    )
    def test_invalid_values(self, values):
        """Out-of-range values raise ConfigError."""
        with pytest.raises(ConfigError):
            PipelineConfig.from_dict(values)

    def test_to_dict_round_trip(self):
        """to_dict output loads back into an equal config."""
        config = PipelineConfig(task=TaskKind.SEGMENT, nm=32, routing={0: 1})
        assert PipelineConfig.from_dict(config.to_dict()) == config


class TestLoadConfig:
    """Tests for YAML loading."""

    def test_no_path_gives_defaults(self):
        """Without a file the defaults are used."""
        assert load_config(None) == PipelineConfig()

    def test_load_yaml(self, tmp_path):
        """Values are read from YAML and omitted keys keep defaults."""
        path = tmp_path / "fod.yaml"
        path.write_text(
            "model: models/fod.onnx\n"
            "conf: 0.35\n"
            "batch: 2\n"
            "routing:\n"
            "  0: 1\n"
            "  2: 0\n",
            encoding="utf-8",
        )
        config = load_config(path)

        assert config.model == "models/fod.onnx"
        assert config.conf == 0.35
        assert config.batch == 2
        assert config.routing == {0: 1, 2: 0}
        assert config.iou == 0.5

    def test_empty_file(self, tmp_path):
        """An empty file yields the defaults."""
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == PipelineConfig()

    def test_missing_file(self, tmp_path):
        """A missing file is a configuration error."""
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        """Malformed YAML is a configuration error."""
        path = tmp_path / "bad.yaml"
        path.write_text("conf: [0.5\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_non_mapping_root(self, tmp_path):
        """The root must be a mapping."""
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)


class TestOverrides:
    """Tests for merging command-line overrides."""

    def test_none_values_ignored(self):
        """Only given overrides replace values."""
        config = PipelineConfig()
        merged = merge_overrides(config, conf=None, iou=0.3)
        assert merged.conf == config.conf
        assert merged.iou == 0.3

    def test_no_overrides_returns_same(self):
        """Nothing to merge keeps the original object."""
        config = PipelineConfig()
        assert merge_overrides(config, model=None) is config

    def test_overrides_validated(self):
        """Merged configs are validated."""
        with pytest.raises(ConfigError):
            merge_overrides(PipelineConfig(), batch=9)

    def test_task_string(self):
        """Task names are converted."""
        assert merge_overrides(PipelineConfig(), task="segment").task is TaskKind.SEGMENT

    def test_unknown_field(self):
        """Unknown override names are rejected."""
        with pytest.raises(ConfigError):
            merge_overrides(PipelineConfig(), colour="red")


class TestCli:
    """Tests for command-line parsing."""

    def test_defaults(self):
        """No flags give no overrides."""
        args = parse_args([])
        assert args.config is None
        assert args.route == []
        assert {k: v for k, v in config_overrides(args).items() if v is not None} == {}

    def test_flags_to_overrides(self):
        """Flags map onto configuration fields."""
        args = parse_args(
            ["--model", "m.onnx", "--conf", "0.3", "--cpu", "--no-annotate", "--profile"]
        )
        overrides = config_overrides(args)
        assert overrides["model"] == "m.onnx"
        assert overrides["conf"] == 0.3
        assert overrides["cuda"] is False
        assert overrides["trt"] is False
        assert overrides["annotate"] is False
        assert overrides["profile"] is True

    def test_routes(self):
        """--route is repeatable and accepts none."""
        args = parse_args(["--route", "0=2", "--route", "1=none"])
        assert args.route == [(0, 2), (1, None)]

    def test_bad_route(self):
        """Malformed routes are rejected by argparse."""
        with pytest.raises(SystemExit):
            parse_args(["--route", "left=2"])
