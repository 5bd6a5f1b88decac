from __future__ import annotations

import uvicorn

from smartchat.apps.api.main import create_app
from smartchat.core.config import get_settings


def main() -> None:
    # Serve the chat API with env-driven settings for compose and local runs.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
