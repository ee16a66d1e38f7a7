"""Run the scan service.

Prepares the store (tables plus the default DECREMENT x1 scanner mode) and
serves ``scanstock.main:app`` with uvicorn, so scanners can post to ``/scan``
and dashboards can connect to the ``/ws`` push channel.

Copyright (c) Bryn Gwalad 2025
"""

import os

from dotenv import load_dotenv

# SQLITE_FILE / DATABASE_URL must be in the environment before the store
# module creates its engine.
load_dotenv()

from scanstock.database import init_db
from scanstock.main import app


def main() -> None:
    """Prepare the store and serve the API.

    Environment variables:
    - HOST: listen address (default 127.0.0.1)
    - PORT: listen port (default 8000)
    - RELOAD: '1' restarts the server on code changes
    """
    init_db()

    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("RELOAD", "0") in ("1", "true", "True")

    import uvicorn

    if reload:
        # uvicorn can only reload an app given as an import string
        uvicorn.run("scanstock.main:app", host=host, port=port, reload=True)
    else:
        uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
