"""Unit tests for db.py"""
from datetime import date

import pytest
import db


@pytest.fixture(autouse=True)
def use_temp_db(tmp_path, monkeypatch):
    """Use a temporary database for each test."""
    test_db = str(tmp_path / "test.db")
    monkeypatch.setattr(db, "DB_PATH", test_db)
    db.init_db()
    yield test_db


# --- Usage accounting ---

class TestUsage:
    def test_calc_cost_known_model(self):
        cost = db.calc_cost("gpt-4o-mini", 1_000_000, 1_000_000)
        assert cost == pytest.approx(0.75)

    def test_calc_cost_unknown_model_is_free(self):
        assert db.calc_cost("mystery-model", 5000, 5000) == 0.0

    def test_log_and_total(self):
        db.log_usage("u1", "1.2.3.4", "gpt-4.1-nano", 1_000_000, 0)
        db.log_usage("u1", "1.2.3.4", "gpt-4.1-nano", 0, 1_000_000, {"feature": "quiz"})
        db.log_usage("u2", "5.6.7.8", "gpt-4.1-nano", 1_000_000, 1_000_000)
        assert db.get_user_total_cost("u1") == pytest.approx(0.5)

    def test_null_token_counts_cost_nothing(self):
        db.log_usage("u1", None, "gpt-4o-mini", None, None)
        assert db.get_user_total_cost("u1") == 0

    def test_check_usage_limit(self):
        assert db.check_usage_limit("u1", limit=1.0)
        db.log_usage("u1", None, "gpt-4o-mini", 2_000_000, 1_000_000)
        # 0.30 + 0.60 = 0.90
        assert db.check_usage_limit("u1", limit=1.0)
        db.log_usage("u1", None, "gpt-4o-mini", 1_000_000, 0)
        assert not db.check_usage_limit("u1", limit=1.0)

    def test_usage_summary_groups_by_model(self):
        db.log_usage("u1", None, "groq/gpt-oss-20b", 100, 200)
        db.log_usage("u1", None, "groq/gpt-oss-20b", 100, 200)
        db.log_usage("u1", None, "cerebras/gpt-oss-120b", 10, 20)
        summary = db.get_usage_summary("u1")
        assert summary["models"]["groq/gpt-oss-20b"]["calls"] == 2
        assert summary["models"]["groq/gpt-oss-20b"]["input_tokens"] == 200
        assert summary["models"]["cerebras/gpt-oss-120b"]["output_tokens"] == 20
        assert summary["total_cost"] > 0


# --- Streaks ---

class TestStreak:
    def test_first_activity(self):
        assert db.compute_streak_after_activity(0, None, date(2024, 3, 10)) == 1

    def test_same_day_keeps_streak(self):
        assert db.compute_streak_after_activity(4, "2024-03-10", date(2024, 3, 10)) == 4

    def test_next_day_increments(self):
        assert db.compute_streak_after_activity(4, "2024-03-09", date(2024, 3, 10)) == 5

    def test_gap_resets(self):
        assert db.compute_streak_after_activity(9, "2024-03-01", date(2024, 3, 10)) == 1

    def test_month_boundary(self):
        assert db.compute_streak_after_activity(2, "2024-02-29", date(2024, 3, 1)) == 3

    def test_garbage_date_starts_over(self):
        assert db.compute_streak_after_activity(3, "not a date", date(2024, 3, 1)) == 1


# --- Attempts ---

class TestAttempts:
    def test_lesson_finish_awards_points(self):
        res = db.record_attempt("u1", "lesson-1", "Algebra 1", 2, 3, today=date(2024, 3, 10))
        assert res["added_points"] == 20
        assert res["points"] == 20
        assert res["streak"] == 1
        assert len(db.get_history("u1")) == 1

    def test_custom_points_per_correct(self):
        res = db.record_attempt("u1", "lesson-1", "Algebra 1", 3, 3, points_per_correct=5)
        assert res["added_points"] == 15

    def test_invalid_points_per_correct_uses_default(self):
        res = db.record_attempt("u1", "lesson-1", "Algebra 1", 1, 3, points_per_correct=-4)
        assert res["added_points"] == 10

    def test_skip_points_still_stores_attempt(self):
        res = db.record_attempt("u1", "lesson-1", "Algebra 1", 3, 3, skip_points=True)
        assert res["added_points"] == 0
        assert res["points"] == 0
        assert len(db.get_history("u1")) == 1

    def test_zero_correct_awards_nothing(self):
        res = db.record_attempt("u1", "lesson-1", "Algebra 1", 0, 3)
        assert res["added_points"] == 0
        assert res["streak"] == 0

    def test_question_correct_does_not_store_attempt(self):
        res = db.record_attempt("u1", event="question-correct", correct_increment=2)
        assert res["added_points"] == 20
        assert db.get_history("u1") == []

    def test_question_correct_ignores_skip_points(self):
        res = db.record_attempt("u1", event="question-correct", skip_points=True)
        assert res["added_points"] == 10

    def test_streak_across_days(self):
        db.record_attempt("u1", "l1", "Biology", 1, 1, today=date(2024, 3, 9))
        res = db.record_attempt("u1", "l2", "Biology", 1, 1, today=date(2024, 3, 10))
        assert res["streak"] == 2
        res = db.record_attempt("u1", "l3", "Biology", 1, 1, today=date(2024, 3, 10))
        assert res["streak"] == 2
        res = db.record_attempt("u1", "l4", "Biology", 1, 1, today=date(2024, 3, 13))
        assert res["streak"] == 1


# --- Stats ---

class TestStats:
    def test_empty_stats(self):
        stats = db.get_stats("nobody")
        assert stats["lessons"] == 0
        assert stats["pct"] == 0
        assert stats["subjects"] == {}

    def test_subject_breakdown(self):
        db.record_attempt("u1", "l1", "Algebra 1", 2, 4)
        db.record_attempt("u1", "l2", "Algebra 1", 4, 4)
        db.record_attempt("u1", "l3", "Chemistry", 1, 3)
        stats = db.get_stats("u1")
        assert stats["lessons"] == 3
        assert stats["correct"] == 7
        assert stats["total"] == 11
        assert stats["subjects"]["Algebra 1"]["pct"] == 75
        assert stats["subjects"]["Chemistry"]["lessons"] == 1
        assert stats["points"] == 70

    def test_history_newest_first(self):
        db.record_attempt("u1", "first", "Algebra 1", 1, 3)
        db.record_attempt("u1", "second", "Algebra 1", 1, 3)
        history = db.get_history("u1")
        assert [h["lesson_id"] for h in history] == ["second", "first"]


# --- Leaderboard ---

def backdate_attempts(user_id, days):
    conn = db.get_conn()
    conn.execute("UPDATE attempt SET created_at = datetime('now', ?) WHERE user_id = ?",
                 (f"-{days} days", user_id))
    conn.commit()
    conn.close()


class TestLeaderboard:
    def test_empty(self):
        assert db.get_leaderboard() == []
        assert db.get_leaderboard_rank("nobody") is None

    def test_ranked_by_points(self):
        db.record_attempt("u1", "l1", "Algebra 1", 2, 3)
        db.record_attempt("u2", "l1", "Algebra 1", 5, 5)
        db.record_attempt("u3", "l1", "Algebra 1", 1, 5)
        board = db.get_leaderboard()
        assert [(e["rank"], e["user_id"], e["points"]) for e in board] == [
            (1, "u2", 50), (2, "u1", 20), (3, "u3", 10)]
        assert db.get_leaderboard_rank("u1") == 2

    def test_limit(self):
        for i in range(5):
            db.record_attempt(f"u{i}", "l1", "Algebra 1", i + 1, 5)
        assert len(db.get_leaderboard(limit=2)) == 2

    def test_ranked_by_streak(self):
        for day in (1, 2, 3):
            db.record_attempt("steady", "l1", "Algebra 1", 1, 1, today=date(2024, 1, day))
        db.record_attempt("burst", "l2", "Algebra 1", 9, 9, today=date(2024, 1, 3))
        board = db.get_leaderboard(by="streak")
        assert board[0]["user_id"] == "steady"
        assert board[0]["streak"] == 3
        assert db.get_leaderboard_rank("burst", by="streak") == 2
        assert db.get_leaderboard_rank("burst", by="points") == 1

    def test_weekly_window_counts_recent_attempts(self):
        db.record_attempt("old", "l1", "Algebra 1", 9, 9)
        backdate_attempts("old", 10)
        db.record_attempt("new", "l1", "Algebra 1", 2, 2)
        weekly = db.get_leaderboard(period="weekly")
        assert [(e["user_id"], e["points"]) for e in weekly] == [("new", 20)]
        monthly = db.get_leaderboard(period="monthly")
        assert [e["user_id"] for e in monthly] == ["old", "new"]

    def test_unknown_order_falls_back_to_points(self):
        db.record_attempt("u1", "l1", "Algebra 1", 1, 1)
        assert db.get_leaderboard(by="name; DROP TABLE profile")[0]["user_id"] == "u1"


# --- Achievements ---

class TestAchievements:
    def test_first_lesson_unlocks(self):
        res = db.record_attempt("u1", "l1", "Algebra 1", 1, 3)
        assert "first_lesson" in res["new_achievements"]

    def test_achievements_unlock_once(self):
        db.record_attempt("u1", "l1", "Algebra 1", 1, 3)
        res = db.record_attempt("u1", "l2", "Algebra 1", 1, 3)
        assert "first_lesson" not in res["new_achievements"]
        keys = [a["key"] for a in db.get_unlocked_achievements("u1")]
        assert keys.count("first_lesson") == 1

    def test_perfect_lesson(self):
        res = db.record_attempt("u1", "l1", "Algebra 1", 3, 3)
        assert "perfect_lesson" in res["new_achievements"]

    def test_points_threshold(self):
        res = db.record_attempt("u1", "l1", "Algebra 1", 10, 10)
        assert "points_100" in res["new_achievements"]

    def test_three_subjects(self):
        db.record_attempt("u1", "l1", "Algebra 1", 1, 3)
        db.record_attempt("u1", "l2", "Biology", 1, 3)
        res = db.record_attempt("u1", "l3", "History", 1, 3)
        assert "three_subjects" in res["new_achievements"]

    def test_streak_achievement(self):
        for day in (8, 9, 10):
            res = db.record_attempt("u1", f"l{day}", "Algebra 1", 1, 3, today=date(2024, 3, day))
        assert "streak_3" in res["new_achievements"]

    def test_unlock_achievement_duplicate_returns_false(self):
        assert db.unlock_achievement("u1", "first_lesson")
        assert not db.unlock_achievement("u1", "first_lesson")

    def test_all_checked_keys_are_defined(self):
        db.record_attempt("u1", "l1", "Algebra 1", 100, 100)
        for entry in db.get_unlocked_achievements("u1"):
            assert entry["key"] in db.ACHIEVEMENTS
