"""
Power plans entry point
Serves the ZIP validation / territory resolution / plans API
"""

import asyncio
import sys

import uvicorn
from loguru import logger

from powerplans.api.server import create_app
from powerplans.container import ServiceContainer
from powerplans.settings import Settings


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


async def main() -> None:
    """Main entry point."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger.info("Starting power plans API...")

    container = ServiceContainer.build(settings)

    try:
        # Database, redis check and snapshot retention
        logger.info("Initializing services...")
        await container.start()

        logger.info("Warming plan cache...")
        await container.warm_cache()

        app = create_app(container, manage_lifecycle=False)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=settings.api_host,
                port=settings.api_port,
                log_level=settings.log_level.lower(),
            )
        )
        logger.info(f"Listening on {settings.api_host}:{settings.api_port}")
        await server.serve()

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        await container.close()
        logger.info("Power plans API stopped")


if __name__ == "__main__":
    asyncio.run(main())
