# -*- coding: utf-8 -*-
"""
@FileName    : settings.py
@Author      : jiaxin
@Date        : 2026/10/12
@Time        : 10:05
@Description :
配置加载：环境变量优先，其次读取 YAML 配置文件（CONFIG_FILE，默认 config.yaml）。
认证方式在这里一次性解析为 AuthMode，启动后不再变化。
"""
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import field_validator, model_validator, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import PydanticBaseSettingsSource
import yaml


class AuthMode(str, Enum):
    NONE = "none"
    STATIC_HEADER = "static_header"
    SERVICE_ACCOUNT_KEY = "service_account_key"
    METADATA_SERVER = "metadata_server"


@dataclass(frozen=True)
class RegistryConfig:
    """上游注册表地址 + 注入到每个请求路径中的命名空间前缀"""
    host: str
    repo_prefix: str


class YamlSettingsSource(PydanticBaseSettingsSource):
    def get_field_value(self, field_name: str, field: Any) -> tuple[Any, str, bool]:
        return None, "", False

    def __call__(self) -> Dict[str, Any]:
        config_file = os.environ.get("CONFIG_FILE", "config.yaml")
        if Path(config_file).exists():
            with open(config_file, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        return {}


class Settings(BaseSettings):
    port: int = Field(..., description="监听端口（PORT）")
    listen_host: str = "0.0.0.0"
    registry_host: str = Field(..., description="上游注册表域名，例如 gcr.io")
    repo_prefix: str = Field(..., description="注入到 /v2/ 之后的命名空间前缀")
    disable_browser_redirects: bool = False

    tls_cert: Optional[str] = None
    tls_key: Optional[str] = None

    auth_header: Optional[str] = None
    google_application_credentials: Optional[str] = None
    use_metadata_server: bool = False
    metadata_host: str = "metadata"

    upstream_timeout: float = 60.0
    log_level: str = "INFO"

    @field_validator("registry_host")
    @classmethod
    def validate_registry_host(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("REGISTRY_HOST must not be empty (example: gcr.io)")
        return value

    @field_validator("repo_prefix")
    @classmethod
    def validate_repo_prefix(cls, value: str) -> str:
        value = value.strip().strip("/")
        if not value:
            raise ValueError("REPO_PREFIX must not be empty")
        return value

    @model_validator(mode='after')
    def validate_tls_pair(self):
        if bool(self.tls_cert) != bool(self.tls_key):
            raise ValueError("'TLS_CERT' and 'TLS_KEY' must be set together")
        if self.tls_cert and self.tls_key:
            if not Path(self.tls_cert).exists():
                raise ValueError(f"Certificate file not found: {self.tls_cert}")
            if not Path(self.tls_key).exists():
                raise ValueError(f"Private key file not found: {self.tls_key}")
        return self

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_cert and self.tls_key)

    @property
    def browser_redirects(self) -> bool:
        return not self.disable_browser_redirects

    @property
    def auth_mode(self) -> AuthMode:
        """按优先级解析认证方式：元数据服务 > 静态头 > 服务账号密钥文件"""
        if self.use_metadata_server:
            return AuthMode.METADATA_SERVER
        if self.auth_header:
            return AuthMode.STATIC_HEADER
        if self.google_application_credentials:
            return AuthMode.SERVICE_ACCOUNT_KEY
        return AuthMode.NONE

    @property
    def registry(self) -> RegistryConfig:
        return RegistryConfig(host=self.registry_host, repo_prefix=self.repo_prefix)

    @classmethod
    def settings_customise_sources(
            cls,
            settings_cls,
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
            YamlSettingsSource(settings_cls),
        )

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_ignore_empty=True,  # PORT= 这类空值视为未设置
        extra="forbid",  # 禁止未定义字段
    )
