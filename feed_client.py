import time
import random
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import requests

logger = logging.getLogger("lernex.feed")

INITIAL_DELAY = 0.6
MAX_DELAY = 8.0
BACKOFF = 1.8


def parse_retry_after(value, now=None):
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
        return seconds if seconds >= 0 else None
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    diff = (when - now).total_seconds()
    return diff if diff > 0 else None


def _json_or_empty(res):
    try:
        data = res.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _lesson_from(data):
    lesson = data.get("lesson")
    if not isinstance(lesson, dict):
        return None
    return {
        "id": lesson.get("id"),
        "subject": lesson.get("subject"),
        "title": lesson.get("title"),
        "content": lesson.get("content"),
        "questions": lesson.get("questions") if isinstance(lesson.get("questions"), list) else [],
        "difficulty": lesson.get("difficulty"),
        "topic": lesson.get("topic") or data.get("topic"),
    }


def fetch_lesson(base_url, subject=None, session=None, max_attempts=5, on_progress=None,
                 sleep=time.sleep, timeout=15, rng=random):
    """Fetch the next feed lesson, waiting out 202/409 while it is being generated.

    Returns None on auth failures, server errors or when attempts run out.
    """
    session = session or requests.Session()
    url = base_url.rstrip("/") + "/api/fyp"
    params = {"subject": subject} if subject else None
    delay = INITIAL_DELAY

    for attempt in range(1, max_attempts + 1):
        try:
            res = session.get(url, params=params, timeout=timeout, headers={"Cache-Control": "no-store"})
        except requests.RequestException as e:
            logger.warning("[fyp] network error; retry subject=%s delay=%.2f err=%s", subject, delay, e)
            if on_progress:
                on_progress({"subject": subject, "status": 0, "attempt": attempt, "progress": None})
            sleep(delay + rng.random() * 0.2)
            delay = min(MAX_DELAY, delay * BACKOFF)
            continue

        logger.debug("[fyp] fetch subject=%s attempt=%d status=%d", subject, attempt, res.status_code)
        if res.status_code == 200:
            return _lesson_from(_json_or_empty(res))

        if res.status_code in (202, 409):
            payload = _json_or_empty(res)
            retry_after = parse_retry_after(res.headers.get("Retry-After"))
            if on_progress:
                on_progress({
                    "subject": subject,
                    "status": res.status_code,
                    "attempt": attempt,
                    "retry_after": retry_after,
                    "progress": payload.get("progress") if isinstance(payload.get("progress"), dict) else None,
                })
            jitter = rng.random() * 0.25
            if retry_after is not None:
                wait = retry_after + jitter
                sleep(wait)
                delay = max(INITIAL_DELAY, min(MAX_DELAY, wait))
            else:
                sleep(delay + jitter)
                delay = min(MAX_DELAY, delay * BACKOFF)
            continue

        if res.status_code in (401, 403) or res.status_code >= 500:
            logger.warning("[fyp] hard-fail subject=%s status=%d body=%s",
                           subject, res.status_code, _json_or_empty(res))
            return None

    return None
