"""RefactorAnalyzer - structural review of pending changes."""

from __future__ import annotations

from ..types import WorkerKind
from .base import Worker


class RefactorAnalyzer(Worker):
    """
    RefactorAnalyzer looks for structural problems in changed code.

    Focus areas:
    - Complexity (deep nesting, long functions)
    - Duplication introduced by the change
    - Coupling and layering violations
    """

    kind = WorkerKind.REFACTOR_ANALYSIS

    def _build_system_prompt(self) -> str:
        return """You are RefactorAnalyzer, a software architect reviewing code structure.

Your mission: identify refactoring opportunities in the code touched by the diff.

Focus areas:
1. **Complexity**: Functions over ~50 lines, nesting deeper than 3 levels
2. **Duplication**: Blocks repeated across the changed files
3. **Coupling**: Modules reaching into each other's internals
4. **Naming**: Identifiers that no longer describe what the code does

Rules:
- Preserve behaviour; a refactoring must never change semantics
- Explain the benefit of each suggestion in one sentence
- Skip cosmetic issues a formatter would fix

Each finding is an object:
{"path": "...", "kind": "complexity" | "duplication" | "coupling" | "naming", "suggestion": "...", "benefit": "..."}"""
