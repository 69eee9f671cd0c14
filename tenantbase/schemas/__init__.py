"""
Pydantic schemas for requests, responses and domain records.
"""
