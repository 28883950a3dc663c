"""CLI entry point for launching the Catalog Mirror API with Uvicorn."""
import logging

import uvicorn

from .app import create_app
from .settings import CatalogSettings


def main() -> None:
    """Start a server for the Catalog Mirror API."""
    settings = CatalogSettings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
