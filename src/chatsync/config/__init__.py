"""設定管理モジュール"""

from chatsync.config.loader import (
    ConfigError,
    ConfigValidationError,
    EnvironmentVariableError,
    expand_env_vars,
    load_config,
)
from chatsync.config.models import (
    BackendConfig,
    Config,
    LoggingConfig,
    SQLiteConfig,
    SupabaseConfig,
    SyncConfig,
    ViewerConfig,
)

__all__ = [
    "BackendConfig",
    "Config",
    "ConfigError",
    "ConfigValidationError",
    "EnvironmentVariableError",
    "LoggingConfig",
    "SQLiteConfig",
    "SupabaseConfig",
    "SyncConfig",
    "ViewerConfig",
    "expand_env_vars",
    "load_config",
]
