"""Retry delay policy for outbox sends and webhook event replays."""

BACKOFF_BASE_MS = 60_000
BACKOFF_CAP_MS = 3_600_000


def next_backoff_ms(attempt: int, base_ms: int = BACKOFF_BASE_MS, cap_ms: int = BACKOFF_CAP_MS) -> int:
    """min(base * 2^(attempt-1), cap). attempt is 1-based; anything below 1 counts as 1."""
    n = max(1, int(attempt))
    return min(base_ms * (2 ** (n - 1)), cap_ms)
