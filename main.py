# file: main.py

import logging

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import get_settings
from app.controllers.notification import router as notification_router
from app.controllers.schedule import router as schedule_router
from app.database.connection import get_db, init_db
from app.services.providers import close_services, init_services
from app.utils.security import verify_api_token

settings = get_settings()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Notification Admin API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Content-Type", "Authorization", "ngrok-skip-browser-warning", "x-api-token"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


app.include_router(notification_router, prefix="/api", tags=["notifications"], dependencies=[Depends(verify_api_token)])
app.include_router(schedule_router, prefix="/api/schedules", tags=["schedules"], dependencies=[Depends(verify_api_token)])


@app.get("/health")
async def health(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check failed")
        return JSONResponse(status_code=500, content={"status": "error", "db": "disconnected"})
    return {"status": "ok", "db": "connected"}


@app.on_event("startup")
async def startup_event():
    await init_db()
    init_services(app, settings)


@app.on_event("shutdown")
async def shutdown_event():
    await close_services(app)
