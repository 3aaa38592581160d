"""YAML設定ファイルの読み込みと環境変数展開"""

import os
import re
from pathlib import Path
from typing import Any

import yaml

from chatsync.config.models import (
    BackendConfig,
    Config,
    LoggingConfig,
    SQLiteConfig,
    SupabaseConfig,
    SyncConfig,
    ViewerConfig,
)

BACKEND_KINDS = ("supabase", "sqlite")


class ConfigError(Exception):
    """設定関連の基底例外"""


class ConfigValidationError(ConfigError):
    """設定値のバリデーションエラー"""


class EnvironmentVariableError(ConfigError):
    """環境変数が見つからないエラー"""


# 環境変数パターン: ${VAR_NAME}
ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def expand_env_vars(value: str) -> str:
    """文字列中の ${VAR_NAME} を環境変数の値に置換する

    Args:
        value: 置換対象の文字列

    Returns:
        環境変数が展開された文字列

    Raises:
        EnvironmentVariableError: 環境変数が未設定
    """
    if not value:
        return value

    def replace_var(match: re.Match[str]) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            raise EnvironmentVariableError(
                f"Environment variable '{var_name}' is not set"
            )
        return env_value

    return ENV_VAR_PATTERN.sub(replace_var, value)


def _expand_recursive(data: Any) -> Any:
    """データ構造を再帰的に走査し、文字列中の環境変数を展開する"""
    if isinstance(data, dict):
        return {key: _expand_recursive(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_recursive(item) for item in data]
    elif isinstance(data, str):
        return expand_env_vars(data)
    else:
        return data


def _validate_required_field(data: dict[str, Any], field: str, parent: str = "") -> Any:
    """必須フィールドの存在を検証する

    Args:
        data: 検証対象のdict
        field: フィールド名
        parent: 親フィールド名（エラーメッセージ用）

    Returns:
        フィールドの値

    Raises:
        ConfigValidationError: フィールドが存在しない
    """
    if field not in data or data[field] is None:
        full_path = f"{parent}.{field}" if parent else field
        raise ConfigValidationError(f"Required field '{full_path}' is missing")
    return data[field]


def _load_backend(data: dict[str, Any]) -> BackendConfig:
    """backend セクションを読み込む"""
    kind = data.get("kind", "supabase")
    if kind not in BACKEND_KINDS:
        raise ConfigValidationError(
            f"backend.kind must be one of {', '.join(BACKEND_KINDS)}, got '{kind}'"
        )

    supabase: SupabaseConfig | None = None
    supabase_data = data.get("supabase")
    if kind == "supabase" and not supabase_data:
        raise ConfigValidationError("Required field 'backend.supabase' is missing")
    if supabase_data:
        supabase = SupabaseConfig(
            url=_validate_required_field(supabase_data, "url", "backend.supabase"),
            api_key=_validate_required_field(
                supabase_data, "api_key", "backend.supabase"
            ),
            access_token=supabase_data.get("access_token") or None,
            nonce_column=supabase_data.get("nonce_column") or None,
            timeout_seconds=supabase_data.get("timeout_seconds", 10.0),
            heartbeat_interval_seconds=supabase_data.get(
                "heartbeat_interval_seconds", 25.0
            ),
        )

    sqlite_data = data.get("sqlite") or {}
    sqlite = SQLiteConfig(
        database_path=sqlite_data.get("database_path", "./data/chat.db"),
    )

    return BackendConfig(kind=kind, supabase=supabase, sqlite=sqlite)


def _load_sync(data: dict[str, Any]) -> SyncConfig:
    """sync セクションを読み込む"""
    sync = SyncConfig(
        reconnect_initial_delay_seconds=data.get("reconnect_initial_delay_seconds", 1.0),
        reconnect_max_delay_seconds=data.get("reconnect_max_delay_seconds", 30.0),
        reconnect_multiplier=data.get("reconnect_multiplier", 2.0),
        optimistic_match_window_seconds=data.get(
            "optimistic_match_window_seconds", 5.0
        ),
        file_buffer_seconds=data.get("file_buffer_seconds", 30.0),
        resync_on_reconnect=data.get("resync_on_reconnect", True),
    )
    if sync.reconnect_initial_delay_seconds <= 0:
        raise ConfigValidationError(
            "sync.reconnect_initial_delay_seconds must be positive"
        )
    if sync.reconnect_max_delay_seconds < sync.reconnect_initial_delay_seconds:
        raise ConfigValidationError(
            "sync.reconnect_max_delay_seconds must be >= "
            "sync.reconnect_initial_delay_seconds"
        )
    if sync.reconnect_multiplier < 1:
        raise ConfigValidationError("sync.reconnect_multiplier must be >= 1")
    return sync


def load_config(path: str | Path) -> Config:
    """設定ファイルを読み込む

    Args:
        path: config.yaml のパス

    Returns:
        Config オブジェクト

    Raises:
        FileNotFoundError: ファイルが存在しない
        ConfigValidationError: 必須項目が欠落
        EnvironmentVariableError: 環境変数が未設定
        yaml.YAMLError: YAML構文エラー
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, encoding="utf-8") as f:
        raw_data = yaml.safe_load(f) or {}

    # 環境変数を展開
    data = _expand_recursive(raw_data)

    # ViewerConfig
    viewer_data = _validate_required_field(data, "viewer")
    viewer = ViewerConfig(
        user_id=str(_validate_required_field(viewer_data, "user_id", "viewer")),
    )

    # BackendConfig
    backend = _load_backend(_validate_required_field(data, "backend"))

    # SyncConfig (optional)
    sync = _load_sync(data.get("sync") or {})

    # LoggingConfig (optional)
    logging_config: LoggingConfig | None = None
    logging_data = data.get("logging")
    if logging_data:
        logging_config = LoggingConfig(
            level=logging_data.get("level", "INFO"),
            format=logging_data.get(
                "format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            ),
            loggers=logging_data.get("loggers"),
        )

    return Config(viewer=viewer, backend=backend, sync=sync, logging=logging_config)
