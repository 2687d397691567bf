"""Sandbox Orchestrator entry point."""

import structlog
import uvicorn

from .api_server import create_app
from .config import get_settings

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = structlog.get_logger(__name__)


def run():
    """Run the service."""
    settings = get_settings()
    logger.info(
        "starting_sandbox_orchestrator",
        namespace=settings.namespace,
        domain=settings.domain,
        port=settings.port,
    )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
