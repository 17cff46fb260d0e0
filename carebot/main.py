from contextlib import asynccontextmanager
from fastapi import FastAPI
from carebot.database import init_models
from carebot.routers import support, webhook
from carebot.utils.logging import setup_logging

logger = setup_logging()

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    logger.info("Database tables ready")
    yield

app = FastAPI(title="CareBot WhatsApp Assistant", lifespan=lifespan)

app.include_router(webhook.router)
app.include_router(support.router)

@app.get("/")
async def root():
    return {"message": "CareBot API is running"}

@app.get("/health")
async def health():
    return {"status": "ok"}
