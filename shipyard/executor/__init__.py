"""Step execution"""

from .step import StepExecutor, StepOutput

__all__ = ["StepExecutor", "StepOutput"]
