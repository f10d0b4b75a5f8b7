"""LLM-backed planning, code generation and test-failure diagnosis.

Uses a LlamaIndex LLM (``Settings.llm`` unless one is injected). All
three operations ask for JSON and tolerate fenced or prose-wrapped output.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from llama_index.core import Settings

from ..errors import CollaboratorError, CollaboratorUnavailableError
from ..workspace import FileWrite

logger = logging.getLogger(__name__)

_MAX_TREE_LINES = 400
_MAX_OUTPUT_CHARS = 6000


@dataclass
class Diagnosis:
    """Root cause of a failing test run plus the edits that should fix it."""

    summary: str
    edits: List[FileWrite] = field(default_factory=list)


@dataclass
class GeneratedCode:
    files: List[FileWrite] = field(default_factory=list)
    test_command: Optional[str] = None
    notes: str = ""


def build_llm(provider: Optional[str], model: Optional[str], temperature: float = 0.1):
    """Create an LLM for the configured provider, or None when unset.

    Supports: ollama, openai, anthropic, gemini.
    """
    if not provider:
        return None
    provider = provider.lower()
    if provider == "ollama":
        from llama_index.llms.ollama import Ollama
        return Ollama(model=model or "llama3.1", temperature=temperature, request_timeout=300)
    if provider == "openai":
        from llama_index.llms.openai import OpenAI
        return OpenAI(model=model or "gpt-4o", temperature=temperature, api_key=os.getenv("OPENAI_API_KEY"))
    if provider == "anthropic":
        from llama_index.llms.anthropic import Anthropic
        return Anthropic(
            model=model or "claude-sonnet-4-5-20250929",
            temperature=temperature,
            api_key=os.getenv("ANTHROPIC_API_KEY"),
        )
    if provider == "gemini":
        from llama_index.llms.gemini import Gemini
        return Gemini(model=model or "models/gemini-2.0-flash", temperature=temperature,
                      api_key=os.getenv("GOOGLE_API_KEY"))
    logger.warning(f"Unknown LLM provider: {provider}")
    return None


def parse_json_output(raw: str) -> Any:
    """Parse LLM output as JSON.

    Supports raw JSON, JSON wrapped in markdown code fences, and JSON
    embedded in surrounding prose.

    Raises:
        CollaboratorError: No JSON value could be recovered.
    """
    text = (raw or "").strip()

    if text.startswith("```"):
        lines = text.split("\n")
        lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines).strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    for open_char, close_char in (("{", "}"), ("[", "]")):
        start = text.find(open_char)
        end = text.rfind(close_char)
        if start != -1 and end > start:
            try:
                return json.loads(text[start:end + 1])
            except json.JSONDecodeError:
                continue

    raise CollaboratorError(f"Could not parse JSON from LLM output ({len(text)} chars)")


def _file_writes(items) -> List[FileWrite]:
    files = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        path = item.get("path") or item.get("file_path")
        content = item.get("content")
        if path and content is not None:
            files.append(FileWrite(path=path, content=content))
    return files


def _truncate(text: str, limit: int = _MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return "...(truncated)...\n" + text[-limit:]


class CodeGenerator:
    """Thin prompt layer over an LLM."""

    def __init__(self, llm=None):
        self._llm = llm

    @property
    def llm(self):
        return self._llm or Settings.llm

    def _complete(self, prompt: str) -> str:
        try:
            llm = self.llm
        except Exception as e:
            # Settings.llm resolves a default provider lazily and raises without credentials
            raise CollaboratorUnavailableError(f"No LLM available: {e}")
        if llm is None:
            raise CollaboratorUnavailableError("No LLM configured. Check LLM_PROVIDER settings.")
        logger.info(f"Calling LLM with prompt of {len(prompt)} chars")
        try:
            response = llm.complete(prompt)
        except Exception as e:
            raise CollaboratorUnavailableError(f"LLM call failed: {e}")
        return (response.text or "").strip()

    def plan_slices(self, project: Dict[str, Any], analysis: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Break the migration into vertical slices.

        Returns dicts with name, description, priority, dependencies (slice
        names), code_contract and behavioral_contract.
        """
        config = project.get("metadata") or {}
        prompt = (
            "You are planning the migration of a legacy application to "
            f"{project.get('target_framework') or 'a modern framework'}.\n"
            "Split the work into small vertical slices, each one independently buildable "
            "and testable. Order them by priority (1 = first). A slice may depend on "
            "slices listed before it, referenced by name.\n\n"
            f"Technology preferences: {json.dumps(config.get('tech_preferences') or {})}\n"
            f"Code analysis:\n{json.dumps(analysis.get('left') or {}, default=str)[:12000]}\n\n"
            f"Behavioral analysis:\n{json.dumps(analysis.get('right') or {}, default=str)[:12000]}\n\n"
            "Respond with a JSON array only. Each item: "
            '{"name": str, "description": str, "priority": int, "dependencies": [str], '
            '"code_contract": {"files": [str], "steps": [str], "test_command": str, '
            '"dev_command": str, "dev_port": int, '
            '"verification": [str]}, "behavioral_contract": {"flows": [str], '
            '"inputs": [str], "outputs": [str]}}'
        )
        parsed = parse_json_output(self._complete(prompt))
        if isinstance(parsed, dict):
            parsed = parsed.get("slices") or []
        if not isinstance(parsed, list):
            raise CollaboratorError("Plan is not a list of slices")
        return [s for s in parsed if isinstance(s, dict) and s.get("name")]

    def generate_files(self, slice_data: Dict[str, Any], tree: List[str],
                       target_framework: Optional[str] = None) -> GeneratedCode:
        """Produce the file writes implementing a slice's code contract."""
        tree_text = "\n".join(tree[:_MAX_TREE_LINES])
        prompt = (
            f"Implement the vertical slice '{slice_data['name']}' "
            f"in {target_framework or 'the target framework'}.\n"
            f"Description: {slice_data.get('description') or ''}\n"
            f"Code contract:\n{json.dumps(slice_data.get('code_contract') or {}, indent=2)}\n"
            f"Behavioral contract:\n{json.dumps(slice_data.get('behavioral_contract') or {}, indent=2)}\n\n"
            f"Current workspace files:\n{tree_text}\n\n"
            "Write the implementation and its tests. Respond with JSON only: "
            '{"files": [{"path": "relative/path", "content": "..."}], '
            '"test_command": "command that runs this slice\'s tests", "notes": "..."}'
        )
        parsed = parse_json_output(self._complete(prompt))
        if isinstance(parsed, list):
            return GeneratedCode(files=_file_writes(parsed))
        return GeneratedCode(
            files=_file_writes(parsed.get("files")),
            test_command=parsed.get("test_command"),
            notes=parsed.get("notes") or "",
        )

    def diagnose(self, slice_data: Dict[str, Any], test_output: str, attempt: int) -> Diagnosis:
        """Explain a failing test run and propose file edits."""
        prompt = (
            f"Tests for the vertical slice '{slice_data['name']}' failed "
            f"(attempt {attempt}).\n"
            f"Behavioral contract:\n{json.dumps(slice_data.get('behavioral_contract') or {}, indent=2)}\n"
            f"Code contract:\n{json.dumps(slice_data.get('code_contract') or {}, indent=2)}\n\n"
            f"Test output:\n{_truncate(test_output)}\n\n"
            "Diagnose the root cause and fix it. Respond with JSON only: "
            '{"diagnosis": "one paragraph", "files": [{"path": "relative/path", "content": "..."}]}'
        )
        raw = self._complete(prompt)
        try:
            parsed = parse_json_output(raw)
        except CollaboratorError:
            return Diagnosis(summary=raw[:2000] or "No diagnosis returned")
        if not isinstance(parsed, dict):
            return Diagnosis(summary=str(parsed)[:2000])
        return Diagnosis(
            summary=parsed.get("diagnosis") or parsed.get("summary") or "No diagnosis returned",
            edits=_file_writes(parsed.get("files")),
        )
