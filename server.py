import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import get_settings
from routes import router
from provider import cleanup_provider

settings = get_settings()

if not logging.root.handlers:
    open(settings.log_file, "w", encoding="utf-8").close()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=[logging.FileHandler(settings.log_file, encoding="utf-8", mode="a")],
    )

logger = logging.getLogger(__name__)

logging.getLogger("uvicorn").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"starting thinkgate proxy, reasoning tag <{settings.reasoning_tag_name}>...")
    yield
    await cleanup_provider()
    logger.info("shutting down...")


def create_app() -> FastAPI:
    app = FastAPI(
        title="thinkgate",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.include_router(router)

    @app.exception_handler(Exception)
    async def error_handler(request: Request, exc: Exception):
        logger.error(f"error: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "type": "error",
                "error": {
                    "type": "api_error",
                    "message": str(exc),
                },
            },
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8082, log_level="debug")
