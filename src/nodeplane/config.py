"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 NODEPLANE_CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类（由调用方显式构造并传入 NodeController，不提供全局单例）
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.expand_paths: 展开 ~ 与相对路径
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Tuple

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, PydanticBaseSettingsSource


class Config(BaseSettings):
    data_root: Path = Path("~/.nodeplane")
    java_home: str | None = Field(
        default=None,
        validation_alias=AliasChoices("NODEPLANE_JAVA_HOME", "JAVA_HOME"),
    )
    besu_java_opts: str = "-Xmx4g"
    docker_host: str = "unix:///var/run/docker.sock"
    systemd_unit_dir: Path = Path("/etc/systemd/system")
    launch_agents_dir: Path = Path("~/Library/LaunchAgents")
    launchd_label_prefix: str = "dev.nodeplane"
    use_sudo: bool = True
    besu_release_url: str = "https://github.com/hyperledger/besu/releases/download/{version}/besu-{version}.zip"
    fabric_release_url: str = (
        "https://github.com/hyperledger/fabric/releases/download/v{version}/"
        "hyperledger-fabric-{os}-{arch}-{version}.tar.gz"
    )
    homebrew_prefix: str | None = None
    download_timeout: float = 300
    log_queue_size: int = 100

    model_config = SettingsConfigDict(
        env_prefix="NODEPLANE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("data_root", "systemd_unit_dir", "launch_agents_dir", mode="after")
    @classmethod
    def expand_paths(cls, value: Path) -> Path:
        """展开用户目录，统一为绝对路径。"""
        return value.expanduser().absolute()

    @field_validator("log_queue_size")
    @classmethod
    def check_queue_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("log_queue_size 必须为正整数")
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 config.json（或 NODEPLANE_CONFIG_FILE 指定路径）加载配置的自定义 Source。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get("NODEPLANE_CONFIG_FILE")
                path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
                if not path.exists():
                    self._data = {}
                    return
                try:
                    with path.open("r", encoding="utf-8") as f:
                        data = json.load(f)
                    self._data = data if isinstance(data, dict) else {}
                except (OSError, ValueError):
                    self._data = {}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                """为满足抽象基类要求，按字段名返回字段值。"""
                self._load()
                data = self._data or {}
                if field_name in data:
                    return data[field_name], field_name, False
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )
