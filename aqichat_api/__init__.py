"""
AQI Assistant Chat Backend

This package provides:
- A conversational assistant that answers air-quality questions
- LLM tool calling against live OpenAQ PM2.5 data (Esri Living Atlas)
- Fuzzy city/station name resolution with alias tables
- Short-lived result caching to bound upstream cost
"""

__version__ = "1.0.0"
__author__ = "AQI Assistant Team"
