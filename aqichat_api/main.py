"""
FastAPI Application - Main Entry Point

Provides REST API for:
- AI chat about live air quality (LLM + tool calling)
- System health monitoring
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from aqichat_api import __version__
from aqichat_core.config import settings
from aqichat_core.logger import logger
from aqichat_api.routers import chat
from aqichat_api.schemas import HealthResponse
from aqichat_api.services.ai.chatbot import AirQualityChatbotService


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    logger.info(f"Starting AQI Assistant API v{__version__} ({settings.environment})")

    # Caches live as long as the process
    app.state.chatbot_service = AirQualityChatbotService()
    if not app.state.chatbot_service.is_configured():
        logger.error("OPENAI_API_KEY is missing or malformed; chat will reply with a configuration error")

    yield

    await app.state.chatbot_service.close()
    logger.info("Shutting down AQI Assistant API")


# API Tags for documentation organization
tags_metadata = [
    {
        "name": "Health",
        "description": "API health and status monitoring",
    },
    {
        "name": "AI Chat",
        "description": "AQI Assistant: answers air-quality questions with live OpenAQ PM2.5 via tool calling",
    },
]

# Create FastAPI application
app = FastAPI(
    title="AQI Assistant API",
    description="""
## 🌍 AQI Assistant

Conversational assistant for the air-quality map dashboard:
- **Tool calling**: the LLM decides when live data is needed
- **Live data**: OpenAQ PM2.5 (latest hour) via Esri Living Atlas
- **Place matching**: aliases, diacritics and fuzzy station/address search
- **Map actions**: replies can ask the map to center on a city

### Example

`POST /api/aqi-chat` with `{"userMessage": "PM2.5 in Hanoi"}`
    """,
    version=__version__,
    lifespan=lifespan,
    openapi_tags=tags_metadata,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Check API health"""
    service = getattr(app.state, "chatbot_service", None)
    ai_status = await service.health_check() if service else {"llm_service": "not_started"}
    return HealthResponse(
        status="healthy" if service and service.is_configured() else "degraded",
        version=__version__,
        ai=ai_status,
    )


@app.get("/", tags=["Health"])
async def root():
    """API root endpoint"""
    return {
        "name": "AQI Assistant API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }
