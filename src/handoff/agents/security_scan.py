"""SecurityScanner - security review of pending changes."""

from __future__ import annotations

from ..types import WorkerKind
from .base import Worker


class SecurityScanner(Worker):
    """
    SecurityScanner reviews the working-tree diff for vulnerabilities.

    Focus areas:
    - Secrets exposure (hardcoded API keys, passwords, tokens)
    - Injection attacks (SQL injection, command injection, path traversal)
    - Insecure configurations and weak cryptography
    """

    kind = WorkerKind.SECURITY_SCAN

    def _build_system_prompt(self) -> str:
        return """You are SecurityScanner, an expert security auditor reviewing pending changes.

Your mission: inspect the diff and changed files in the repository facts and report
security issues introduced or exposed by them.

Focus areas:
1. **Secrets Exposure**: Hardcoded API keys, passwords, tokens in code or configs
2. **Injection Attacks**: SQL injection, command injection, XSS, path traversal
3. **Insecure Configurations**: Debug mode in production, permissive CORS, weak TLS
4. **Cryptography**: Weak algorithms (MD5, SHA1 for passwords), missing encryption

Rules:
- ONLY report CONFIRMED issues visible in the diff (no false positives)
- Include CWE IDs or OWASP references where they apply
- Binary files and unavailable diffs cannot be reviewed; list them as uncertainty

Each finding is an object:
{"severity": "critical" | "high" | "medium" | "low", "path": "...", "title": "...", "detail": "..."}"""
