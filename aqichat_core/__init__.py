"""
Shared configuration and logging for the AQI Assistant chat backend
"""
