"""FastAPI ASGI application entrypoint."""

import uvicorn

from .core.app_factory import create_application
from .core.config import Settings

app = create_application()


def run() -> None:
    settings = Settings()
    uvicorn.run(
        "subsync.main:app",
        host=settings.host,
        port=settings.port,
    )


if __name__ == "__main__":
    run()

__all__ = ("app", "run")
