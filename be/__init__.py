"""Backend package: DB models, staging loads, fuzzy matching, query cache, API.

This package loads Snowflake staging exports into Postgres, reconciles UEIs
with contractor profiles, and serves the results through FastAPI.
"""
