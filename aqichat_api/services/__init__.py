"""Services package for the AQI Assistant"""
