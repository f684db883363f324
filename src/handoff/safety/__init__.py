"""Safety boundary for repository fact gathering.

- Argument-vector command execution with validation (safe_exec.py)
- Error scrubbing and prompt-injection sanitization (redaction.py)
- Path traversal checks (safe_paths.py)
- Telemetry logging (telemetry.py)
"""
