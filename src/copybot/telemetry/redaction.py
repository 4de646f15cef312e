from __future__ import annotations


def redact_secret(value: str | None, *, visible: int = 4) -> str:
    """Mask a secret for logging, keeping only a short prefix and suffix."""
    if not value:
        return "<unset>"
    if len(value) <= visible * 2:
        return "*" * len(value)
    return f"{value[:visible]}...{value[-visible:]}"
