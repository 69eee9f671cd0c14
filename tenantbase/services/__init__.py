"""
Services package for provisioning, pooling and query logic.
"""
