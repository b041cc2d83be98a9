import uvicorn

from app import app
from constants import HOST, PORT
from logging_config import get_logger

logger = get_logger(__name__)


def main(host: str = HOST, port: int = PORT):
    """Serve the HTTP API and channel relay in one uvicorn worker.

    The relay keeps per-process listener tasks, so a single worker is run here.
    uvicorn's own log config is skipped to keep the request-id format.
    """
    logger.info(f"Starting chat rooms server on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_config=None, proxy_headers=True, forwarded_allow_ips="*")


if __name__ == "__main__":
    main()
