__version__ = "0.1.0"

from .model import Platform, Target, StepRole
from .options import PipelineOptions, RunContext
from .pipeline import generate_pipeline

__all__ = ["__version__", "Platform", "Target", "StepRole", "PipelineOptions", "RunContext", "generate_pipeline"]
