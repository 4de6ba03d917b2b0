from __future__ import annotations

from cli_relay.cli.launcher import CompactResult, TurnResult

CONTEXT_MAX_TOKENS = 200_000
CONTEXT_WARN_TOKENS = 150_000


def format_tokens(n: int) -> str:
    if n >= 1000:
        return f"{n / 1000:.1f}K"
    return str(n)


def format_elapsed(seconds: float) -> str:
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    if minutes == 0:
        return f"{secs}s"
    return f"{minutes}m {secs}s"


def context_percent(tokens: int, max_tokens: int = CONTEXT_MAX_TOKENS) -> int:
    return round(tokens / max_tokens * 100)


def build_usage_footer(
    result: TurnResult,
    *,
    max_tokens: int = CONTEXT_MAX_TOKENS,
    warn_tokens: int = CONTEXT_WARN_TOKENS,
) -> str:
    parts: list[str] = []
    if result.input_tokens is not None:
        parts.append(
            f"context: {format_tokens(result.input_tokens)} ({context_percent(result.input_tokens, max_tokens)}%)"
        )
    if result.cost_usd is not None:
        parts.append(f"cost: ${result.cost_usd:.4f}")
    if result.turn_count is not None:
        parts.append(f"turns: {result.turn_count}")
    if not parts:
        return ""

    footer = f"\n\n---\n_{' | '.join(parts)}_"
    if result.input_tokens is not None and result.input_tokens >= warn_tokens:
        footer += "\n_context getting full, use `!compact` to reset_"
    return footer


def format_compact_outcome(result: CompactResult, *, max_tokens: int = CONTEXT_MAX_TOKENS) -> str:
    if not result.success:
        return "Compact failed. You can use `!exit` to end the session and start fresh."
    parts = ["Session compacted."]
    if result.input_tokens is not None:
        parts.append(
            f"Context now: {format_tokens(result.input_tokens)} ({context_percent(result.input_tokens, max_tokens)}%)"
        )
    if result.cost_usd is not None:
        parts.append(f"Cost: ${result.cost_usd:.4f}")
    return " | ".join(parts)


def split_message(text: str, max_chars: int) -> list[str]:
    """Split at the last paragraph break (then line break) under the budget."""
    if max_chars <= 0 or len(text) <= max_chars:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_chars:
            chunks.append(remaining)
            break
        split_at = remaining.rfind("\n\n", 0, max_chars)
        if split_at <= 0:
            split_at = remaining.rfind("\n", 0, max_chars)
        if split_at <= 0:
            split_at = max_chars
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].lstrip("\n")
    return chunks
