import uvicorn

from download_service.core.config import get_settings


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "download_service.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.ENVIRONMENT == "development",
    )
