"""Entry point: run the publish engine API and its timers."""

import uvicorn
from dotenv import load_dotenv

from core.config import Settings
from core.logging_config import setup_logging


def run_server(host: str | None = None, port: int | None = None) -> None:
    load_dotenv()
    settings = Settings.from_env()
    setup_logging(settings.log_level, json_output=settings.log_json)
    uvicorn.run(
        "api.server:app",
        host=host or settings.host,
        port=port or settings.port,
        log_config=None,   # keep our root handler
    )


if __name__ == "__main__":
    run_server()
