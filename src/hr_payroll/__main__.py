"""Entry point for running the application with uvicorn."""

import uvicorn

from hr_payroll.config import get_settings


def main() -> None:
    """Run the API server."""
    settings = get_settings()
    uvicorn.run(
        "hr_payroll.api.app:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
