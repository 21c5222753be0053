from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from aqichat_core.logger import logger
from aqichat_api.schemas import ChatReply, ChatRequest, ErrorResponse
from aqichat_api.services.ai.chatbot import (
    AirQualityChatbotService,
    CONFIG_ERROR_REPLY,
    SERVER_ERROR_REPLY,
)
from aqichat_api.services.ai.guardrails import clip_message

router = APIRouter(tags=["AI Chat"])

# Replies are live and conversational; never cache them anywhere
NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Netlify-CDN-Cache-Control": "no-store",
}

EMPTY_MESSAGE_REPLY = "Please type a question about air quality."

CHAT_PATHS = ["/api/aqi-chat", "/.netlify/functions/AQI-Chat"]
CHAT_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def get_chatbot_service(request: Request) -> AirQualityChatbotService:
    """Process-wide chatbot service, created on first use if lifespan did not"""
    service = getattr(request.app.state, "chatbot_service", None)
    if service is None:
        service = AirQualityChatbotService()
        request.app.state.chatbot_service = service
    return service


def json_response(body, status_code: int = 200) -> JSONResponse:
    if hasattr(body, "model_dump"):
        body = body.model_dump(exclude_none=True)
    return JSONResponse(content=body, status_code=status_code, headers=NO_STORE_HEADERS)


async def _read_json_body(request: Request) -> dict:
    """Request body as a dict; anything unparseable counts as empty"""
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Chat request body is not valid JSON")
        return {}
    return body if isinstance(body, dict) else {}


async def aqi_chat(request: Request, service: AirQualityChatbotService = Depends(get_chatbot_service)):
    """
    Answer an air-quality question, optionally with a map action.

    **Body:** `{"userMessage": "PM2.5 in Hanoi", "history": [{"role": "user", "content": "..."}]}`

    **Response:** always HTTP 200 with `{"reply": "...", "action": {"kind": "centerOn", "place": "...", "country": "..."}}`
    (`action` only when a tool located a place). Non-POST methods get 405 and an
    empty message gets 400.
    """
    if request.method != "POST":
        return json_response(ErrorResponse(error="POST only"), status_code=405)

    try:
        if not service.is_configured():
            logger.error("Missing/invalid OPENAI_API_KEY env var.")
            return json_response(ChatReply(reply=CONFIG_ERROR_REPLY))

        chat_request = ChatRequest.model_validate(await _read_json_body(request))
        text = clip_message(chat_request.user_message)
        if not text:
            return json_response(
                ErrorResponse(error="userMessage is required", reply=EMPTY_MESSAGE_REPLY),
                status_code=400,
            )

        result = await service.answer(text, chat_request.history)
        return json_response(ChatReply(reply=result.reply, action=result.action))

    except Exception as e:
        logger.exception(f"Chat handler error: {e}")
        return json_response(ChatReply(reply=SERVER_ERROR_REPLY))


for _path in CHAT_PATHS:
    router.add_api_route(_path, aqi_chat, methods=CHAT_METHODS, response_model=None)


@router.get("/api/chat/health")
async def chat_health_check(service: AirQualityChatbotService = Depends(get_chatbot_service)):
    """
    Check health of AI chatbot components.

    Returns status of:
    - LLM credentials and model
    - Data source
    - Tool result caches
    """
    return await service.health_check()
