import sqlite3
import os
import json
import logging
from datetime import date, datetime, timedelta

DB_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "lernex.db")

logger = logging.getLogger("lernex.db")

# USD per token
PRICES = {
    "gpt-5-nano": {"input": 0.05 / 1_000_000, "output": 0.4 / 1_000_000},
    "gpt-4.1-nano": {"input": 0.1 / 1_000_000, "output": 0.4 / 1_000_000},
    "gpt-4o-mini": {"input": 0.15 / 1_000_000, "output": 0.6 / 1_000_000},
    "groq/gpt-oss-20b": {"input": 0.1 / 1_000_000, "output": 0.5 / 1_000_000},
    "deepinfra/gpt-oss-20b": {"input": 0.03 / 1_000_000, "output": 0.14 / 1_000_000},
    "cerebras/gpt-oss-120b": {"input": 0.25 / 1_000_000, "output": 0.69 / 1_000_000},
    "lightningai/gpt-oss-120b": {"input": 0.1 / 1_000_000, "output": 0.4 / 1_000_000},
}

USAGE_LIMIT_USD = float(os.getenv("USAGE_LIMIT_USD", "3"))
POINTS_PER_CORRECT = 10

ACHIEVEMENTS = {
    "first_lesson":   {"name": "First Steps",     "icon": "🎓",  "desc": "Finish your first lesson"},
    "ten_lessons":    {"name": "Bookworm",        "icon": "📚",  "desc": "Finish 10 lessons"},
    "fifty_lessons":  {"name": "Scholar",         "icon": "🏛️",  "desc": "Finish 50 lessons"},
    "points_100":     {"name": "Century",         "icon": "💯",  "desc": "Earn 100 points"},
    "points_500":     {"name": "High Scorer",     "icon": "🏆",  "desc": "Earn 500 points"},
    "points_1000":    {"name": "Point Hoarder",   "icon": "👑",  "desc": "Earn 1000 points"},
    "streak_3":       {"name": "Warming Up",      "icon": "🔥",  "desc": "Study 3 days in a row"},
    "streak_7":       {"name": "Week Warrior",    "icon": "📅",  "desc": "Study 7 days in a row"},
    "streak_14":      {"name": "Fortnight Focus", "icon": "💪",  "desc": "Study 14 days in a row"},
    "streak_30":      {"name": "Unstoppable",     "icon": "🚀",  "desc": "Study 30 days in a row"},
    "perfect_lesson": {"name": "Flawless",        "icon": "💎",  "desc": "Answer every question in a lesson correctly"},
    "three_subjects": {"name": "Explorer",        "icon": "🌍",  "desc": "Finish lessons in 3 different subjects"},
}

def get_conn():
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn

def init_db():
    conn = get_conn()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS profile (
            user_id TEXT PRIMARY KEY,
            points INTEGER NOT NULL DEFAULT 0,
            streak INTEGER NOT NULL DEFAULT 0,
            last_study_date TEXT,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at TEXT NOT NULL DEFAULT (datetime('now'))
        );
        CREATE TABLE IF NOT EXISTS attempt (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            lesson_id TEXT,
            subject TEXT,
            correct_count INTEGER NOT NULL DEFAULT 0,
            total INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT (datetime('now'))
        );
        CREATE TABLE IF NOT EXISTS usage_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT,
            ip TEXT,
            model TEXT NOT NULL,
            input_tokens INTEGER,
            output_tokens INTEGER,
            metadata TEXT,
            created_at TEXT NOT NULL DEFAULT (datetime('now'))
        );
        CREATE TABLE IF NOT EXISTS achievements (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            achievement_key TEXT NOT NULL,
            unlocked_at TEXT NOT NULL DEFAULT (datetime('now')),
            UNIQUE(user_id, achievement_key)
        );
        CREATE INDEX IF NOT EXISTS idx_usage_user ON usage_log (user_id);
        CREATE INDEX IF NOT EXISTS idx_attempt_user ON attempt (user_id);
    """)
    conn.commit()
    conn.close()

# --- Usage ---

def calc_cost(model, input_tokens=0, output_tokens=0):
    p = PRICES.get(model)
    if not p:
        return 0.0
    return (input_tokens or 0) * p["input"] + (output_tokens or 0) * p["output"]

def log_usage(user_id, ip, model, input_tokens=None, output_tokens=None, metadata=None):
    conn = get_conn()
    conn.execute(
        """INSERT INTO usage_log (user_id, ip, model, input_tokens, output_tokens, metadata)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (user_id, ip, model, input_tokens, output_tokens,
         json.dumps(metadata) if metadata is not None else None)
    )
    conn.commit()
    conn.close()

def get_user_total_cost(user_id):
    conn = get_conn()
    rows = conn.execute(
        "SELECT model, input_tokens, output_tokens FROM usage_log WHERE user_id = ?",
        (user_id,)
    ).fetchall()
    conn.close()
    return sum(calc_cost(r["model"], r["input_tokens"] or 0, r["output_tokens"] or 0) for r in rows)

def check_usage_limit(user_id, limit=None):
    """True while the user's accumulated spend is under the limit."""
    limit = USAGE_LIMIT_USD if limit is None else limit
    return get_user_total_cost(user_id) < limit

def get_usage_summary(user_id):
    conn = get_conn()
    rows = conn.execute(
        """SELECT model, COUNT(*) as calls,
                  SUM(COALESCE(input_tokens, 0)) as input_tokens,
                  SUM(COALESCE(output_tokens, 0)) as output_tokens
           FROM usage_log WHERE user_id = ?
           GROUP BY model""",
        (user_id,)
    ).fetchall()
    conn.close()
    models = {}
    total = 0.0
    for r in rows:
        cost = calc_cost(r["model"], r["input_tokens"], r["output_tokens"])
        total += cost
        models[r["model"]] = {
            "calls": r["calls"],
            "input_tokens": r["input_tokens"],
            "output_tokens": r["output_tokens"],
            "cost": round(cost, 6),
        }
    return {"total_cost": round(total, 6), "limit": USAGE_LIMIT_USD, "models": models}

# --- Profiles ---

def ensure_profile(user_id):
    conn = get_conn()
    conn.execute("INSERT OR IGNORE INTO profile (user_id) VALUES (?)", (user_id,))
    conn.commit()
    conn.close()

def get_profile(user_id):
    conn = get_conn()
    row = conn.execute("SELECT * FROM profile WHERE user_id = ?", (user_id,)).fetchone()
    conn.close()
    return dict(row) if row else None

def _as_date(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None

def compute_streak_after_activity(previous_streak, last_study_date, today=None):
    """Same day keeps the streak, the next day extends it, any gap starts over at 1."""
    today = _as_date(today) or date.today()
    last = _as_date(last_study_date)
    previous = max(0, previous_streak or 0)
    if last is None:
        return 1
    if last == today:
        return max(1, previous)
    if last == today - timedelta(days=1):
        return previous + 1
    return 1

# --- Attempts ---

def record_attempt(user_id, lesson_id=None, subject=None, correct_count=0, total=0,
                   event="lesson-finish", points_per_correct=POINTS_PER_CORRECT,
                   skip_points=False, correct_increment=1, today=None):
    """Store a lesson result and award points.

    "lesson-finish" stores an attempt row and awards correct_count units;
    "question-correct" awards correct_increment units without storing one.
    Points only land when there is at least one unit and skip_points is off.
    """
    if event != "question-correct":
        event = "lesson-finish"
    skip = event == "lesson-finish" and bool(skip_points)
    per_correct = points_per_correct if isinstance(points_per_correct, (int, float)) and points_per_correct > 0 else POINTS_PER_CORRECT

    ensure_profile(user_id)
    conn = get_conn()
    if event == "lesson-finish":
        conn.execute(
            "INSERT INTO attempt (user_id, lesson_id, subject, correct_count, total) VALUES (?, ?, ?, ?, ?)",
            (user_id, lesson_id, subject, int(correct_count), int(total))
        )
        units = int(correct_count)
    else:
        units = int(correct_increment)
    units = max(0, units)

    added = 0
    if not skip and units > 0:
        prof = conn.execute(
            "SELECT points, streak, last_study_date FROM profile WHERE user_id = ?", (user_id,)
        ).fetchone()
        today = _as_date(today) or date.today()
        streak = compute_streak_after_activity(prof["streak"], prof["last_study_date"], today)
        added = int(units * per_correct)
        conn.execute(
            """UPDATE profile SET points = points + ?, streak = ?, last_study_date = ?,
                      updated_at = datetime('now') WHERE user_id = ?""",
            (added, streak, today.isoformat(), user_id)
        )
    conn.commit()
    conn.close()

    profile = get_profile(user_id)
    return {
        "ok": True,
        "event": event,
        "added_points": added,
        "points": profile["points"],
        "streak": profile["streak"],
        "new_achievements": check_achievements(user_id),
    }

def get_stats(user_id):
    conn = get_conn()
    totals = conn.execute(
        """SELECT COUNT(*) as lessons,
                  COALESCE(SUM(correct_count), 0) as correct,
                  COALESCE(SUM(total), 0) as total
           FROM attempt WHERE user_id = ?""",
        (user_id,)
    ).fetchone()

    # Subject breakdown
    subject_rows = conn.execute(
        """SELECT subject,
                  COUNT(*) as lessons,
                  SUM(correct_count) as correct,
                  SUM(total) as total
           FROM attempt
           WHERE user_id = ? AND subject IS NOT NULL
           GROUP BY subject""",
        (user_id,)
    ).fetchall()
    conn.close()

    subjects = {}
    for r in subject_rows:
        subjects[r["subject"]] = {
            "lessons": r["lessons"],
            "correct": r["correct"],
            "total": r["total"],
            "pct": int(r["correct"] / r["total"] * 100) if r["total"] else 0
        }

    profile = get_profile(user_id) or {"points": 0, "streak": 0}
    return {
        "lessons": totals["lessons"],
        "correct": totals["correct"],
        "total": totals["total"],
        "pct": int(totals["correct"] / totals["total"] * 100) if totals["total"] else 0,
        "points": profile["points"],
        "streak": profile["streak"],
        "subjects": subjects
    }

def get_history(user_id, limit=50):
    conn = get_conn()
    rows = conn.execute(
        """SELECT * FROM attempt
           WHERE user_id = ?
           ORDER BY id DESC LIMIT ?""",
        (user_id, limit)
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]

# --- Leaderboard ---

# Window in days; None is all time
LEADERBOARD_PERIODS = {"all": None, "monthly": 30, "weekly": 7, "daily": 1}
LEADERBOARD_ORDER = ("points", "streak")

def get_leaderboard(by="points", period="all", limit=20):
    """Top learners by points or streak.

    Points over a window are summed from the attempts stored in it. Streaks
    have no history, so by="streak" always ranks all time.
    """
    if by not in LEADERBOARD_ORDER:
        by = "points"
    days = LEADERBOARD_PERIODS.get(period) if by == "points" else None
    conn = get_conn()
    if days is None:
        rows = conn.execute(
            f"""SELECT user_id, points, streak FROM profile
                ORDER BY {by} DESC, user_id LIMIT ?""",
            (limit,)
        ).fetchall()
    else:
        rows = conn.execute(
            """SELECT a.user_id, SUM(a.correct_count) * ? as points,
                      COALESCE(p.streak, 0) as streak
               FROM attempt a LEFT JOIN profile p ON p.user_id = a.user_id
               WHERE a.created_at >= datetime('now', ?)
               GROUP BY a.user_id
               HAVING points > 0
               ORDER BY points DESC, a.user_id LIMIT ?""",
            (POINTS_PER_CORRECT, f"-{days} days", limit)
        ).fetchall()
    conn.close()
    return [
        {"rank": i + 1, "user_id": r["user_id"], "points": r["points"], "streak": r["streak"]}
        for i, r in enumerate(rows)
    ]

def get_leaderboard_rank(user_id, by="points"):
    """All-time position of one learner, or None without a profile."""
    if by not in LEADERBOARD_ORDER:
        by = "points"
    conn = get_conn()
    row = conn.execute(f"SELECT {by} as value FROM profile WHERE user_id = ?", (user_id,)).fetchone()
    if row is None:
        conn.close()
        return None
    ahead = conn.execute(
        f"SELECT COUNT(*) as c FROM profile WHERE {by} > ?", (row["value"],)
    ).fetchone()["c"]
    conn.close()
    return ahead + 1

# --- Achievements ---

def get_unlocked_achievements(user_id):
    conn = get_conn()
    rows = conn.execute(
        "SELECT achievement_key, unlocked_at FROM achievements WHERE user_id = ? ORDER BY unlocked_at, id",
        (user_id,)
    ).fetchall()
    conn.close()
    return [{"key": r["achievement_key"], "unlocked_at": r["unlocked_at"]} for r in rows]

def unlock_achievement(user_id, key):
    conn = get_conn()
    try:
        conn.execute(
            "INSERT INTO achievements (user_id, achievement_key) VALUES (?, ?)",
            (user_id, key)
        )
        conn.commit()
        return True
    except sqlite3.IntegrityError:
        return False
    finally:
        conn.close()

def check_achievements(user_id):
    profile = get_profile(user_id) or {"points": 0, "streak": 0}
    conn = get_conn()
    lessons = conn.execute(
        "SELECT COUNT(*) as c FROM attempt WHERE user_id = ?", (user_id,)
    ).fetchone()["c"]
    perfect = conn.execute(
        "SELECT COUNT(*) as c FROM attempt WHERE user_id = ? AND total > 0 AND correct_count >= total",
        (user_id,)
    ).fetchone()["c"]
    subjects = conn.execute(
        "SELECT COUNT(DISTINCT subject) as c FROM attempt WHERE user_id = ? AND subject IS NOT NULL",
        (user_id,)
    ).fetchone()["c"]
    conn.close()

    newly_unlocked = []
    checks = {
        "first_lesson": lessons >= 1,
        "ten_lessons": lessons >= 10,
        "fifty_lessons": lessons >= 50,
        "points_100": profile["points"] >= 100,
        "points_500": profile["points"] >= 500,
        "points_1000": profile["points"] >= 1000,
        "streak_3": profile["streak"] >= 3,
        "streak_7": profile["streak"] >= 7,
        "streak_14": profile["streak"] >= 14,
        "streak_30": profile["streak"] >= 30,
        "perfect_lesson": perfect >= 1,
        "three_subjects": subjects >= 3,
    }
    for key, condition in checks.items():
        if condition and key in ACHIEVEMENTS:
            if unlock_achievement(user_id, key):
                newly_unlocked.append(key)
    if newly_unlocked:
        logger.info("[achievements] %s unlocked %s", user_id, newly_unlocked)
    return newly_unlocked

# Initialize on import
init_db()
