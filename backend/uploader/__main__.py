"""Run the service with uvicorn: ``python -m uploader``."""
import uvicorn

from uploader.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run(
        "uploader.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
