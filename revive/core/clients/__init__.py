"""Clients for the analysis and code-generation collaborators."""

from .behavioral import BehavioralAnalysisClient
from .code_analysis import CodeAnalysisClient
from .codegen import CodeGenerator, Diagnosis, GeneratedCode, build_llm, parse_json_output
from .http import HttpCollaboratorClient

__all__ = [
    "BehavioralAnalysisClient",
    "CodeAnalysisClient",
    "CodeGenerator",
    "Diagnosis",
    "GeneratedCode",
    "HttpCollaboratorClient",
    "build_llm",
    "parse_json_output",
]
