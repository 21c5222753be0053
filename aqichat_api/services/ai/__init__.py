"""
AI Layer for the AQI Assistant

This module provides OpenAI function-calling chat over live PM2.5 data,
with place-name resolution, tool result caching and completion retry.
"""

from .chatbot import AirQualityChatbotService, ChatResult

__all__ = ["AirQualityChatbotService", "ChatResult"]
