import time


def utc_now_ms() -> int:
    """Current UTC time in epoch milliseconds."""
    return int(time.time() * 1000)
