"""Plain-text alert messages and Discord-sized chunking."""

from __future__ import annotations

from typing import Any

# Discord hard limit per message
DISCORD_MSG_MAX = 2000
# Headroom for "(i/n) " prefixes
DISCORD_SAFE_MAX = 1900

LOG_PREFIXES = {
    "LOAN": "[LOAN]",
    "LP_RANGE": "[LP]",
}


def truncate_address(address: str, chars: int = 4) -> str:
    """Truncate an address to 0x1234...5678 format."""
    if len(address) < chars * 2 + 4:
        return address
    return f"{address[: chars + 2]}...{address[-chars:]}"


def log_prefix(alert_type: str) -> str:
    return LOG_PREFIXES.get(alert_type, f"[{alert_type}]")


def _format_value(value: Any) -> str:
    if value is None:
        return "unavailable"
    if isinstance(value, float):
        return f"{value:.4f}"
    return str(value)


def format_alert_message(phase: str, alert_type: str, message: str, meta: dict[str, Any] | None = None) -> str:
    """Render an alert transition as a direct message.

    Example::

        [LP] NEW LP_RANGE ALERT
        LP out of range (SparkDEX, wallet=0x12...cdef, token=42)

        Details:
        - range_status: OUT_OF_RANGE
    """
    lines = [f"{log_prefix(alert_type)} {phase} {alert_type} ALERT", message]
    if meta:
        lines.append("")
        lines.append("Details:")
        for key, value in meta.items():
            lines.append(f"- {key}: {_format_value(value)}")
    return "\n".join(lines)


def split_message(text: str | None, max_len: int = DISCORD_SAFE_MAX) -> list[str]:
    """Split text into chunks of at most ``max_len`` characters.

    Chunks break on newlines where possible; a single line longer than
    ``max_len`` is hard-split.
    """
    if max_len < 1:
        raise ValueError("max_len must be >= 1")
    if text is None or not text.strip():
        return []

    chunks: list[str] = []
    buf = ""
    for line in text.replace("\r\n", "\n").split("\n"):
        if len(line) > max_len:
            if buf:
                chunks.append(buf)
                buf = ""
            chunks.extend(line[i : i + max_len] for i in range(0, len(line), max_len))
            continue

        add_len = (1 if buf else 0) + len(line)
        if len(buf) + add_len > max_len:
            if buf:
                chunks.append(buf)
            buf = line
            continue
        buf = f"{buf}\n{line}" if buf else line

    if buf:
        chunks.append(buf)
    return chunks


def numbered_chunks(text: str, max_len: int = DISCORD_SAFE_MAX, hard_max: int = DISCORD_MSG_MAX) -> list[str]:
    """Chunks prefixed with ``(i/n)`` when there is more than one, each within ``hard_max``."""
    chunks = split_message(text, max_len)
    total = len(chunks)
    out = []
    for i, chunk in enumerate(chunks, start=1):
        prefix = f"({i}/{total}) " if total > 1 else ""
        out.append((prefix + chunk)[:hard_max])
    return out
