"""HTTP routers for the AQI Assistant API"""
