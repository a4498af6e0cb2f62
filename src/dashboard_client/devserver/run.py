from __future__ import annotations

from dashboard_client.config import get_settings
from dashboard_client.utils.log import logger


def serve(*, host: str | None = None, port: int | None = None) -> None:
    import uvicorn

    s = get_settings()
    host = host or s.dev_host
    port = int(port or s.dev_port)
    logger.info("devserver_start", host=host, port=port)
    uvicorn.run(
        "dashboard_client.devserver.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    serve()
