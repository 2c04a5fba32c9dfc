"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables, settings, provider configs
    logging_config  — structured JSON / pretty logging
    errors          — exception hierarchy & handlers
    health          — per-provider health aggregation
    middleware      — request logging + correlation IDs
"""
