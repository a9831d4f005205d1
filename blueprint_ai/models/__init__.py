from .base import Base
from .ai_usage import AIUsage
from .analysis_job import AnalysisJob

__all__ = [
    "Base",
    "AIUsage",
    "AnalysisJob",
]
