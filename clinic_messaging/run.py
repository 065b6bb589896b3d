"""Start the API server.

Usage:
    clinic-messaging

Or with uvicorn directly:
    uvicorn clinic_messaging.main:app --host 0.0.0.0 --port 8000
"""

import uvicorn

from clinic_messaging.core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "clinic_messaging.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
