"""Run the HTTP service: python -m adforge.api"""

from __future__ import annotations

import uvicorn

from adforge import log_setup
from adforge.config import settings


def main() -> None:
    log_setup.configure()
    uvicorn.run("adforge.api.app:app", host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
