from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .routes import router as api_router
from .logging_setup import configure_logging
from .config import settings
from .exceptions import RideMatchError
from .services import build_services
from . import cache, db
import logging

# configure file logging for the app
configure_logging()
logger = logging.getLogger("ridematch.main")

app = FastAPI(title="Ridematch - Ride Matching API")

# Enable CORS for UI dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/v1")


@app.exception_handler(RideMatchError)
async def _ride_error(request: Request, exc: RideMatchError):
    logger.info("request_rejected: path=%s error=%s detail=%s", request.url.path, type(exc).__name__, exc)
    body = {"detail": str(exc)}
    rule = getattr(exc, "rule", None)
    if rule:
        body["rule"] = rule
    return JSONResponse(status_code=exc.status_code, content=body)


@app.on_event("startup")
async def _startup():
    logger.info("Starting Ridematch API application")
    # tests install their own services before the first request
    if getattr(app.state, "services", None) is None:
        engine = db.make_engine(settings)
        await db.init_db(engine)
        app.state.services = build_services(settings, engine, cache.create_redis(settings.REDIS_URL))
    logger.info("Matching services ready")


@app.on_event("shutdown")
async def _shutdown():
    svc = getattr(app.state, "services", None)
    if svc is None:
        return
    await svc.dispatcher.shutdown()
    await svc.engine.dispose()
    await svc.redis.aclose()
    logger.info("Ridematch API stopped")


@app.get("/")
async def read_root():
    return {"message": "Ridematch API"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
