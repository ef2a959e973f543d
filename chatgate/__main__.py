from __future__ import annotations

import uvicorn
from loguru import logger

from chatgate.settings import GateSettings
from chatgate.web.app import create_app


def main() -> None:
    settings = GateSettings()
    logger.info("Starting chatgate on {}:{} (permission mode: {})", settings.host, settings.port, settings.permission_mode)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
