"""
配置加载测试：环境变量、config.json 与默认值。
"""

import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from src.nodeplane.config import Config


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("JAVA_HOME", "NODEPLANE_JAVA_HOME", "NODEPLANE_CONFIG_FILE", "NODEPLANE_DATA_ROOT", "NODEPLANE_USE_SUDO"):
        monkeypatch.delenv(name, raising=False)


def test_defaults(tmp_path):
    config = Config()
    assert config.data_root.is_absolute()
    assert config.data_root.name == ".nodeplane"
    assert config.log_queue_size == 100
    assert config.java_home is None


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("NODEPLANE_DATA_ROOT", str(tmp_path / "nodes"))
    monkeypatch.setenv("NODEPLANE_USE_SUDO", "false")
    monkeypatch.setenv("JAVA_HOME", "/usr/lib/jvm/java-17")
    config = Config()
    assert config.data_root == tmp_path / "nodes"
    assert config.use_sudo is False
    assert config.java_home == "/usr/lib/jvm/java-17"


def test_json_file_source(tmp_path, monkeypatch):
    path = tmp_path / "custom.json"
    path.write_text(json.dumps({"launchd_label_prefix": "org.example", "log_queue_size": 8}), encoding="utf-8")
    monkeypatch.setenv("NODEPLANE_CONFIG_FILE", str(path))
    config = Config()
    assert config.launchd_label_prefix == "org.example"
    assert config.log_queue_size == 8


def test_invalid_queue_size():
    with pytest.raises(PydanticValidationError):
        Config(log_queue_size=0)
