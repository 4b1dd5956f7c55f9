"""
Data ingestion: schema, database setup and synthetic data.
"""
