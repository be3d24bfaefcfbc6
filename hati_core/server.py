"""服务启动入口：`hati-server` 或 `python -m hati_core.server`。"""

import uvicorn

from hati_core.api import create_app
from hati_core.config.settings import settings
from hati_core.infrastructure.logging.logger import logger


def main() -> None:
    app = create_app()
    logger.info(
        "Starting Hati server",
        extra={"extra": {"host": settings.host, "port": settings.port, "storage": settings.storage_backend}},
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
