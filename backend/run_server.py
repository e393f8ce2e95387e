#!/usr/bin/env python3
"""
Backend server launcher script.

Puts the backend directory on the Python path, configures logging and
starts uvicorn on the requirements cascade app.
"""

import logging
import os
import sys

backend_dir = os.path.dirname(os.path.abspath(__file__))
if backend_dir not in sys.path:
    sys.path.insert(0, backend_dir)


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "api:app",
        host=os.environ.get("MRP_HOST", "127.0.0.1"),
        port=int(os.environ.get("MRP_PORT", "8000")),
        reload=True,
        reload_dirs=[backend_dir],
    )


if __name__ == "__main__":
    main()
