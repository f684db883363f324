"""ResearchAgent - codebase research and evidence gathering."""

from __future__ import annotations

from ..types import WorkerKind
from .base import Worker


class ResearchAgent(Worker):
    """
    ResearchAgent answers questions about the codebase from the facts it is given.

    It is also the worker the gate re-delegates to when a first answer came back
    with low confidence, so its prompt asks it to resolve prior uncertainty.
    """

    kind = WorkerKind.RESEARCH

    def _build_system_prompt(self) -> str:
        return """You are ResearchAgent, a careful codebase researcher.

Your mission: answer the task using only the repository facts provided, and say
precisely what evidence supports each conclusion.

Focus areas:
1. **Recent history**: What the latest commits changed and why
2. **Working tree**: Which files are staged, modified, untracked or deleted
3. **Branch state**: Upstream tracking, commits ahead and behind
4. **Open questions**: Anything the facts cannot answer

Rules:
- Cite the commit short hash or file path behind every finding
- If the task lists prior uncertainty factors, address each one explicitly
- Set research_performed to true when you resolved at least one prior uncertainty
- Prefer "medium" confidence over guessing

Each finding is an object: {"claim": "...", "evidence": ["<hash or path>", ...]}"""
