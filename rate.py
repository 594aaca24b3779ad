import time
import threading

CAP = 10          # requests
REFILL_SECONDS = 60

_buckets: dict[str, dict] = {}
_lock = threading.Lock()


def take(key, now=None):
    """Spend one token from the key's bucket. False when the bucket is empty."""
    now = time.monotonic() if now is None else now
    with _lock:
        bucket = _buckets.get(key)
        if bucket is None:
            bucket = {"tokens": CAP, "ts": now}
            _buckets[key] = bucket
        if now - bucket["ts"] > REFILL_SECONDS:
            bucket["tokens"] = CAP
            bucket["ts"] = now
        if bucket["tokens"] <= 0:
            return False
        bucket["tokens"] -= 1
        return True


def reset():
    with _lock:
        _buckets.clear()
