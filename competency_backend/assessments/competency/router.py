"""
Competency Assessment Router

This module exports the router from the controller module.
"""

from competency_backend.assessments.competency.controller import router
from competency_backend.common.logger import app_logger

logger = app_logger.getChild("competency.router")
logger.debug(f"Competency router loaded with {len(router.routes)} routes")

__all__ = ['router']
