"""
FastAPI Application Package

Contains the FastAPI application and the composition root that wires the
providers, cache, OHLC engine and scheduler together.
"""
