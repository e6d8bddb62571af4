"""
Bookstore Service — 設定

他のサービスと同じく環境変数から読み込む。
DATABASE_URL は必須、それ以外はデフォルト値を持つ。
"""

import os
from dataclasses import dataclass


def _flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"
    log_level: str = "INFO"
    # キャンセル時に在庫を自動で戻すか（デフォルトは戻さない）
    restock_on_cancel: bool = False
    # 購入履歴のある書籍を削除するとき購入も一緒に消すか
    book_delete_cascade: bool = False
    create_schema: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ["DATABASE_URL"],
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            restock_on_cancel=_flag("RESTOCK_ON_CANCEL", False),
            book_delete_cascade=_flag("BOOK_DELETE_CASCADE", False),
            create_schema=_flag("CREATE_SCHEMA", True),
        )
