"""Core utilities and configuration for OneReport billing"""
from core.config import settings
from core.exceptions import ExternalAPIError, OneReportError, ValidationError
from core.logging import get_logger

__all__ = [
    "settings",
    "get_logger",
    "OneReportError",
    "ValidationError",
    "ExternalAPIError",
]
