"""設定データクラス"""

from dataclasses import dataclass, field


@dataclass
class ViewerConfig:
    """閲覧ユーザー設定"""

    user_id: str


@dataclass
class SupabaseConfig:
    """Supabase 接続設定

    Attributes:
        url: プロジェクト URL（例: https://xyz.supabase.co）
        api_key: anon / service キー
        access_token: ユーザーの JWT（未指定時は api_key を使用）
        nonce_column: クライアント nonce を保存するカラム名（未指定時は近似照合）
        timeout_seconds: REST 呼び出しのタイムアウト
        heartbeat_interval_seconds: realtime のハートビート間隔
    """

    url: str
    api_key: str
    access_token: str | None = None
    nonce_column: str | None = None
    timeout_seconds: float = 10.0
    heartbeat_interval_seconds: float = 25.0


@dataclass
class SQLiteConfig:
    """ローカル SQLite バックエンド設定"""

    database_path: str = "./data/chat.db"


@dataclass
class BackendConfig:
    """バックエンド設定"""

    kind: str = "supabase"
    supabase: SupabaseConfig | None = None
    sqlite: SQLiteConfig = field(default_factory=SQLiteConfig)


@dataclass
class SyncConfig:
    """同期設定"""

    reconnect_initial_delay_seconds: float = 1.0
    reconnect_max_delay_seconds: float = 30.0
    reconnect_multiplier: float = 2.0
    optimistic_match_window_seconds: float = 5.0
    file_buffer_seconds: float = 30.0
    resync_on_reconnect: bool = True


@dataclass
class LoggingConfig:
    """ログ設定"""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    loggers: dict[str, str] | None = None


@dataclass
class Config:
    """アプリケーション設定"""

    viewer: ViewerConfig
    backend: BackendConfig
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig | None = None
