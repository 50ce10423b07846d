"""Code generation core.

This package holds the per-session machinery: file and state management,
the generation context, the model-output boundary, the phase orchestrator
and the CodeGeneratorAgent that ties them together.
"""

from codegen.agent import CodeGeneratorAgent
from codegen.file_manager import FileManager
from codegen.generation_context import GenerationContext
from codegen.model_output import LLMModelOutputProvider, ModelOutputProvider
from codegen.phase_orchestrator import PhaseOrchestrator
from codegen.state_manager import StateManager

__all__ = [
    "CodeGeneratorAgent",
    "FileManager",
    "GenerationContext",
    "LLMModelOutputProvider",
    "ModelOutputProvider",
    "PhaseOrchestrator",
    "StateManager",
]
