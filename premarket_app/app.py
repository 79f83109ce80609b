import logging

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from premarket_app.core.catch_error_middleware import ErrorHandlerMiddleware
from premarket_app.core.errors import AppError
from premarket_app.core.exception_handler import (
    AppErrorHandler,
    HTTPErrorHandler,
    ValidationErrorHandler,
)
from premarket_app.core.lifespan import lifespan
from premarket_app.core.settings import settings
from premarket_app.routes.admin_grant_access_routes import router as admin_grant_access_router
from premarket_app.routes.admin_pre_market_routes import router as admin_pre_market_router
from premarket_app.routes.grant_access_routes import router as grant_access_router
from premarket_app.routes.pre_market_routes import router as pre_market_router
from premarket_app.routes.webhooks_routes import router as webhooks_router

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = FastAPI(
    lifespan=lifespan,
    title=settings.PROJECT_NAME,
    version="2.0.0",
)

app.include_router(pre_market_router, prefix="/v2")
app.include_router(admin_pre_market_router, prefix="/v2")
app.include_router(grant_access_router, prefix="/v2")
app.include_router(admin_grant_access_router, prefix="/v2")
app.include_router(webhooks_router, prefix="/v2")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_HOSTS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["System"])
async def health_check():
    return {"status": "ok"}


app.add_exception_handler(AppError, AppErrorHandler())
app.add_exception_handler(HTTPException, HTTPErrorHandler())
app.add_exception_handler(RequestValidationError, ValidationErrorHandler())

app.add_middleware(ErrorHandlerMiddleware)


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8001)
