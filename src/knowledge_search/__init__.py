"""Knowledge Search package."""

from .config import AppConfig, get_config
from .service import KnowledgeSearchService

__all__ = ["AppConfig", "KnowledgeSearchService", "get_config"]
