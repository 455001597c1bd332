"""
Database layer: repository interface and SQLAlchemy implementation.
"""
