"""
HTTP surface over the parking event pipeline.

Run with:
    uvicorn api.main:app --reload
"""
