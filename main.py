# app/main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from database.mongodb import MongoDB
from services.image_archive import build_image_archive
from services.innovatrics_service import InnovatricsService
from routers import verification
from config import settings
import logging
from logging.handlers import RotatingFileHandler
import os

# Configure logging
os.makedirs(settings.LOG_DIR, exist_ok=True)

file_handler = RotatingFileHandler(
    os.path.join(settings.LOG_DIR, "app.log"),
    maxBytes=10485760,  # 10MB
    backupCount=5
)
console_handler = logging.StreamHandler()
formatter = logging.Formatter(
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
file_handler.setFormatter(formatter)
console_handler.setFormatter(formatter)

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    handlers=[file_handler, console_handler]
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await MongoDB.connect_db()
    app.state.provider = InnovatricsService()
    app.state.image_archive = build_image_archive()
    logger.info(f"{settings.API_TITLE} v{settings.API_VERSION} started (liveness mode: {settings.LIVENESS_MODE})")
    yield
    # Shutdown
    app.state.provider.close()
    await MongoDB.close_db()

app = FastAPI(
    title=settings.API_TITLE,
    version=settings.API_VERSION,
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(verification.router)

@app.get("/health")
async def health_check():
    return {"status": "healthy"}

@app.get("/")
async def root():
    return {
        "message": f"{settings.API_TITLE} v{settings.API_VERSION}",
        "flow": [
            "document",
            "selfie_upload",
            "face_detection",
            "face_comparison",
            "liveness",
            "decision"
        ],
        "face_match_threshold": settings.FACE_MATCH_THRESHOLD
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
