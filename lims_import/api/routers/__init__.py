"""
FastAPI routers for the import pipeline HTTP surface.
"""
