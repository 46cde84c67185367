"""
Schemas package - pydantic domain models
"""
