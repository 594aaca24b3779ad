"""Pull complete quiz questions out of a partially streamed JSON quiz."""
import json
import random
import re

from latex import has_latex_issues, normalize_latex, parse_json_lenient, repair_control_escapes, scan_latex

DIFFICULTIES = ("intro", "easy", "medium", "hard")

_RE_QUESTIONS_ARRAY = re.compile(r'"questions"\s*:\s*\[')


def _complete_objects_span(buffer, start):
    """Scan an array body from `start`, return (end_of_last_complete_object, array_closed)."""
    depth = 0
    in_str = False
    escaped = False
    last_end = -1
    for i in range(start, len(buffer)):
        ch = buffer[i]
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            if depth > 0:
                depth -= 1
                if depth == 0:
                    last_end = i + 1
        elif ch == "]" and depth == 0:
            return last_end, True
    return last_end, False


def extract_questions(buffer):
    """Return the questions that are complete so far, or None if none can be parsed yet.

    A full parse is tried first. Otherwise the "questions" array is scanned up
    to the last object that closed, and that prefix is parsed on its own.
    """
    if not buffer:
        return None
    try:
        parsed = parse_json_lenient(buffer)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict) and isinstance(parsed.get("questions"), list):
        return parsed["questions"]

    marker = _RE_QUESTIONS_ARRAY.search(buffer)
    if not marker:
        return None
    body_start = marker.end()
    last_end, _closed = _complete_objects_span(buffer, body_start)
    if last_end == -1:
        return None
    body = buffer[body_start:last_end].strip().rstrip(",")
    try:
        questions = parse_json_lenient("[" + body + "]")
    except ValueError:
        return None
    return questions if isinstance(questions, list) else None


def _coerce_str(value):
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return str(value).strip()


def _clean_field(value, field, diagnostics):
    text = normalize_latex(repair_control_escapes(_coerce_str(value)))
    if text and diagnostics is not None:
        scan = scan_latex(text)
        if has_latex_issues(scan):
            diagnostics.append({"field": field, **scan.as_dict()})
    return text


def sanitize_question(raw, difficulty="easy", index=0, diagnostics=None):
    question = raw if isinstance(raw, dict) else {}
    prefix = f"q{index}"
    prompt = _clean_field(question.get("prompt"), prefix + ".prompt", diagnostics)

    base_choices = question.get("choices")
    base_choices = [_coerce_str(c) for c in base_choices] if isinstance(base_choices, list) else []
    max_choices = 3 if difficulty in ("intro", "easy") else 4
    kept = [c for c in base_choices if c][:max(2, max_choices)]
    choices = [_clean_field(c, f"{prefix}.choices[{i}]", diagnostics) for i, c in enumerate(kept)]

    raw_idx = question.get("correctIndex")
    try:
        idx = int(raw_idx)
        if isinstance(raw_idx, float) and raw_idx != idx:
            idx = -1
    except (TypeError, ValueError, OverflowError):
        idx = -1
    if idx < 0 or idx >= len(choices):
        idx = 0

    explanation = _clean_field(question.get("explanation"), prefix + ".explanation", diagnostics)
    return {"prompt": prompt, "choices": choices, "correctIndex": idx, "explanation": explanation}


def sanitize_quiz(obj, subject, difficulty="easy"):
    """Normalize a parsed quiz in place. Returns (quiz, latex diagnostics)."""
    diagnostics = []
    if not isinstance(obj, dict):
        obj = {}
    obj["id"] = _coerce_str(obj.get("id"))
    obj["subject"] = _clean_field(obj.get("subject") or subject, "subject", diagnostics) or subject
    obj["title"] = _clean_field(obj.get("title"), "title", diagnostics)
    if obj.get("difficulty") not in DIFFICULTIES:
        obj["difficulty"] = difficulty
    questions = obj.get("questions")
    if isinstance(questions, list):
        obj["questions"] = [sanitize_question(q, obj["difficulty"], i, diagnostics) for i, q in enumerate(questions)]
    else:
        obj["questions"] = []
    return obj, diagnostics


def shuffle_choices(question, rng=random):
    """Fisher-Yates shuffle of a question's choices, keeping correctIndex on the right answer."""
    choices = question.get("choices")
    if not isinstance(choices, list) or len(choices) < 2:
        return question
    idx = question.get("correctIndex")
    if not isinstance(idx, int) or idx < 0 or idx >= len(choices):
        idx = 0
    decorated = list(enumerate(choices))
    for i in range(len(decorated) - 1, 0, -1):
        j = rng.randint(0, i)
        decorated[i], decorated[j] = decorated[j], decorated[i]
    question["choices"] = [choice for _, choice in decorated]
    question["correctIndex"] = next(pos for pos, (orig, _) in enumerate(decorated) if orig == idx)
    return question


def shuffle_questions(questions, rng=random):
    if not isinstance(questions, list):
        return questions
    return [shuffle_choices(q, rng) for q in questions]


def to_ndjson(question):
    return json.dumps(question, ensure_ascii=False) + "\n"


class QuestionStream:
    """Accumulates streamed quiz JSON and hands out each question once, as soon as it completes."""

    def __init__(self, difficulty="easy", shuffle=False, rng=random):
        self.difficulty = difficulty
        self.shuffle = shuffle
        self.rng = rng
        self.buffer = ""
        self.emitted = 0
        self.diagnostics = []

    def feed(self, chunk):
        if chunk:
            self.buffer += chunk
        return self._drain()

    def finish(self):
        return self._drain()

    def _drain(self):
        questions = extract_questions(self.buffer)
        if not questions or len(questions) <= self.emitted:
            return []
        fresh = []
        for i in range(self.emitted, len(questions)):
            question = sanitize_question(questions[i], self.difficulty, i, self.diagnostics)
            if self.shuffle:
                question = shuffle_choices(question, self.rng)
            fresh.append(question)
        self.emitted = len(questions)
        return fresh
