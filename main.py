import os

import uvicorn

from core.logger import setup_logging


def main():
    """Main entry point for the Finish OS web service."""
    setup_logging()

    reload_enabled = os.getenv("FINISH_OS_RELOAD", "0").lower() in {"1", "true", "yes"}
    host = os.getenv("FINISH_OS_HOST", "127.0.0.1")
    port = int(os.getenv("FINISH_OS_PORT", "8010"))

    uvicorn.run(
        "web.backend.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload_enabled,
        reload_dirs=["web", "core"] if reload_enabled else None,
    )


if __name__ == "__main__":
    main()
