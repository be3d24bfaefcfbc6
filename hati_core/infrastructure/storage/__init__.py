"""存储后端。

- json_store: 本地文件存储，开发时默认使用。
- sql_store: SQLAlchemy 存储，生产环境配合 Postgres 使用。
"""

from hati_core.infrastructure.storage.json_store import JsonConversationStore
from hati_core.infrastructure.storage.sql_store import SqlConversationStore


def create_store(cfg=None):
    """根据配置创建存储实例。"""

    from hati_core.config.settings import settings

    cfg = cfg or settings
    if cfg.storage_backend == "sql":
        return SqlConversationStore(cfg.database_url)
    return JsonConversationStore(root=cfg.storage_root)


__all__ = ["JsonConversationStore", "SqlConversationStore", "create_store"]
