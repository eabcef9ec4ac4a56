import logging
from pathlib import Path
from dotenv import load_dotenv

# Load .env from project root (same dir as this package's parent)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .services.soil_pipeline import router as soil_router
from .services.intersection_service import router as intersect_router

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title="Soil Survey Study Area Backend", version="0.1.0")

# Allow CORS for frontend development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(soil_router, prefix="/soil", tags=["Soil"])
app.include_router(intersect_router, prefix="/intersection", tags=["Intersection"])

@app.get("/health")
async def health_check():
    return {"status": "ok"}
