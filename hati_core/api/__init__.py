"""HTTP 接口层（FastAPI）。"""

from hati_core.api.app import create_app

__all__ = ["create_app"]
