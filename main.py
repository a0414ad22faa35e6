import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import LOG_LEVEL, PUBLIC_PATHS, SCHEDULER_ENABLED, _current_user_id
from db import init_db
from errors import DosingError
from reminders import shutdown_scheduler, start_scheduler
from routers import auth, medications, notifications
from security import (
    _csrf_header_valid,
    _ensure_csrf_cookie,
    _get_authenticated_user,
    _is_same_origin,
)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

init_db()

app = FastAPI(title="Panacea API")


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    path = request.url.path
    if not path.startswith("/api/"):
        return await call_next(request)
    if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
        if not _is_same_origin(request):
            return JSONResponse({"error": "forbidden"}, status_code=403)
        if path not in PUBLIC_PATHS and not _csrf_header_valid(request):
            return JSONResponse({"error": "forbidden"}, status_code=403)
    if path in PUBLIC_PATHS:
        return _ensure_csrf_cookie(request, await call_next(request))

    user = _get_authenticated_user(request)
    if not user:
        return JSONResponse({"error": "unauthorized"}, status_code=401)
    _current_user_id.set(user["id"])
    return _ensure_csrf_cookie(request, await call_next(request))


@app.exception_handler(DosingError)
async def dosing_error_handler(request: Request, exc: DosingError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse({"error": "validation failed", "details": details}, status_code=422)


@app.on_event("startup")
def startup():
    if SCHEDULER_ENABLED:
        start_scheduler()
    else:
        logger.info("Reminder scheduler disabled (SCHEDULER_ENABLED=0)")


@app.on_event("shutdown")
def shutdown():
    shutdown_scheduler()


@app.get("/api/health")
def health():
    return JSONResponse({"ok": True, "message": "Panacea API is running"})


app.include_router(auth.router)
app.include_router(medications.router)
app.include_router(notifications.router)


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
