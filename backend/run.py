import os
import uvicorn

from app.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    is_dev = not settings.is_production
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 8000)),
        reload=is_dev,
        log_level=settings.log_level.lower(),
        workers=1 if is_dev else int(os.environ.get("WEB_CONCURRENCY", 4)),
    )
