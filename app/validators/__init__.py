"""
app/validators package marker.
"""

from app.validators.crawler_config_validator import validate_crawler_config

__all__ = [
    "validate_crawler_config",
]
