import logging

from fastapi import FastAPI

from app.config.db import close_mongo_connection, connect_to_mongo
from app.config.settings import get_settings
from app.routers import admin, webhook

logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")


def create_app() -> FastAPI:
    app = FastAPI(title="Social Commerce DM Assistant", version="0.1.0")

    settings = get_settings()
    app.state.settings = settings

    @app.on_event("startup")
    async def startup_event():
        await connect_to_mongo(app, settings)

    @app.on_event("shutdown")
    async def shutdown_event():
        await close_mongo_connection(app)

    app.include_router(webhook.router, tags=["webhook"])
    app.include_router(admin.router)

    @app.get("/healthz")
    async def healthcheck():
        return {"status": "ok"}

    return app


app = create_app()
