def compute_backoff(attempt: int, base_seconds: float) -> float:
    """Delay before retry number *attempt* (1-based): base, 2*base, 4*base..."""
    return base_seconds * (2 ** max(0, attempt - 1))
