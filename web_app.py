import json
import logging
import warnings

# Suppress noisy logs
logging.getLogger("LiteLLM").setLevel(logging.CRITICAL)
logging.getLogger("litellm").setLevel(logging.CRITICAL)
warnings.filterwarnings("ignore")

from dotenv import load_dotenv
load_dotenv()

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.routing import Route
from starlette.responses import JSONResponse, StreamingResponse
from starlette.requests import Request
from sse_starlette.sse import EventSourceResponse

from crewai import Agent
import db
import llm
import rate
from formatter import IncrementalFormatter, format_text
from latex import extract_balanced_object, parse_json_lenient
from quiz_stream import QuestionStream, sanitize_quiz, shuffle_questions, to_ndjson

logger = logging.getLogger("lernex.web")

QUIZ_MAX_CHARS = 4300
LESSON_MAX_CHARS = 2000
LESSON_MAX_TOKENS = 220
SUPPORT_EMAIL = "support@lernex.net"
NO_STORE = {"Cache-Control": "no-store"}

def get_user_id(request: Request) -> str | None:
    return request.cookies.get("user_id") or None

def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else "anon"

def get_tier(request: Request) -> str:
    return llm.user_tier(request.cookies.get("tier"))

async def read_json(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}

def log_usage_safe(user_id, ip, model, usage, metadata=None):
    """Usage accounting never blocks a response."""
    if not (user_id or ip):
        return
    usage = usage or {}
    try:
        db.log_usage(user_id, ip, model, usage.get("input_tokens"), usage.get("output_tokens"), metadata)
    except Exception as e:
        logger.warning("[usage] log failed: %s", e)

def over_limit(user_id) -> bool:
    return bool(user_id) and not db.check_usage_limit(user_id)

# === Prompts ===
def quiz_messages(text, subject, difficulty, mode):
    if mode == "quick":
        count_rule = "Produce 0-1 multiple-choice questions. Prefer 0 if the request is a narrowly scoped factual question."
    elif mode == "full":
        count_rule = "Produce 3-5 multiple-choice questions."
    else:
        count_rule = "Produce 2-3 multiple-choice questions."
    system = f"""Return ONLY a valid JSON object (no prose) matching exactly:
{{
  "id": string,
  "subject": string,
  "title": string,
  "difficulty": "intro"|"easy"|"medium"|"hard",
  "questions": [
    {{ "prompt": string, "choices": string[], "correctIndex": number, "explanation": string }}
  ]
}}
Rules:
- {count_rule}
- Keep choices short (<= 8 words). Keep explanations concise (<= 25 words).
- Use inline LaTeX with \\( ... \\) for math and \\[ ... \\] only if necessary. Do NOT use single-dollar delimiters.
- Always balance {{}} and math delimiters.
- Avoid HTML tags and code fences.
- JSON must be valid; escape backslashes so LaTeX survives JSON, and do not double-escape macros."""
    user = (f"Subject: {subject}\nDifficulty: {difficulty}\nSource:\n{text[:QUIZ_MAX_CHARS]}\n\n"
            "Create fair multiple-choice questions based on the source, following the rules.")
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]

def lesson_messages(text, subject):
    return [
        {"role": "system", "content": "Write a concise micro-lesson (80-120 words). Two short paragraphs. No JSON, no code fences."},
        {"role": "user", "content": f"Subject: {subject}\nSource:\n{text[:LESSON_MAX_CHARS]}"},
    ]

def support_system_prompt(context):
    template = "\n".join([
        "You are Lernex support assistant. Provide concise, friendly answers grounded in the product.",
        "Reference core Lernex features when useful: personalised lessons, playlists, achievements, analytics and streaks.",
        f"Always mention that learners can email {SUPPORT_EMAIL} for a human follow-up if needed.",
        "If a user asks for account-specific actions you cannot perform, outline the steps or offer to escalate to the human team.",
        "Do not invent product capabilities. If unsure, ask clarifying questions.",
    ])
    if not context:
        return template
    return f"{template}\n\nLearner context summary:\n{context[:600]}"

def sanitize_messages(raw):
    """Keep user/assistant turns with text, each capped at 2000 chars, last 12 only."""
    if not isinstance(raw, list):
        return []
    result = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        role = entry.get("role")
        content = entry.get("content")
        if role not in ("user", "assistant") or not isinstance(content, str):
            continue
        trimmed = content.strip()
        if trimmed:
            result.append({"role": role, "content": trimmed[:2000]})
    return result[-12:]

def make_support_agent(context, tier):
    return Agent(
        role="Lernex Support Assistant",
        goal="Answer the learner's latest message helpfully and briefly.",
        backstory=support_system_prompt(context),
        llm=llm.get_llm(tier, "fast"),
        verbose=False,
    )

def parse_quiz(raw):
    """Full parse first, then the first balanced object. None if neither works."""
    try:
        return parse_json_lenient(raw)
    except ValueError:
        pass
    extracted = extract_balanced_object(raw)
    if not extracted:
        return None
    try:
        return parse_json_lenient(extracted)
    except ValueError:
        return None

def quiz_request(data):
    text = data.get("text")
    if not isinstance(text, str) or len(text.strip()) < 20:
        return None
    return {
        "text": text,
        "subject": data.get("subject") or "Algebra 1",
        "difficulty": data.get("difficulty") or "easy",
        "mode": data.get("mode") if data.get("mode") in ("quick", "mini", "full") else "mini",
    }

# === Routes ===

async def api_format(request: Request):
    data = await read_json(request)
    text = data.get("text")
    if not isinstance(text, str):
        return JSONResponse({"error": "Missing text"}, status_code=400)
    return JSONResponse({"html": format_text(text, block=data.get("block", True) is not False)})

async def api_format_stream(request: Request):
    data = await read_json(request)
    chunks = data.get("chunks")
    if not isinstance(chunks, list):
        return JSONResponse({"error": "Missing chunks"}, status_code=400)

    async def event_generator():
        formatter = IncrementalFormatter()
        for chunk in chunks:
            if not isinstance(chunk, str):
                continue
            for fragment in formatter.append(chunk):
                yield {"event": "fragment", "data": json.dumps({"html": fragment})}
        for fragment in formatter.finalize():
            yield {"event": "fragment", "data": json.dumps({"html": fragment})}
        yield {"event": "done", "data": json.dumps({"html": formatter.html})}

    return EventSourceResponse(event_generator())

async def api_generate_quiz(request: Request):
    user_id = get_user_id(request)
    ip = get_client_ip(request)
    if over_limit(user_id):
        return JSONResponse({"error": "Usage limit exceeded"}, status_code=403)
    data = await read_json(request)
    req = quiz_request(data)
    if not req:
        return JSONResponse({"error": "Provide >= 20 characters"}, status_code=400)

    tier = get_tier(request)
    messages = quiz_messages(req["text"], req["subject"], req["difficulty"], req["mode"])
    params = {"temperature": 0.4, "max_tokens": llm.quiz_max_tokens(req["mode"]), "reasoning_effort": "low"}
    used_fallback = False
    try:
        result = await run_in_threadpool(llm.complete, messages, tier, "fast",
                                         response_format={"type": "json_object"}, **params)
    except Exception as e:
        logger.warning("[quiz] json mode failed, retrying without: %s", e)
        used_fallback = True
        try:
            result = await run_in_threadpool(llm.complete, messages, tier, "fast", **params)
        except Exception as e2:
            logger.error("[quiz] fallback failed: %s", e2)
            return JSONResponse({"error": "Invalid JSON"}, status_code=502)

    log_usage_safe(user_id, ip, result.model, result.usage, {"feature": "quiz", "mode": req["mode"]})

    parsed = parse_quiz(result.text or "{}")
    if parsed is None:
        return JSONResponse({"error": "Invalid JSON"}, status_code=502)

    quiz, diagnostics = sanitize_quiz(parsed, req["subject"], req["difficulty"])
    if diagnostics:
        logger.warning("[quiz] latex-anomalies %s", json.dumps(
            {"quizId": quiz["id"], "fallback": used_fallback, "issues": diagnostics}))
    if data.get("shuffle"):
        quiz["questions"] = shuffle_questions(quiz["questions"])
    return JSONResponse(quiz, headers=NO_STORE)

async def api_generate_quiz_stream(request: Request):
    user_id = get_user_id(request)
    ip = get_client_ip(request)
    if over_limit(user_id):
        return JSONResponse({"error": "Usage limit exceeded"}, status_code=403)
    data = await read_json(request)
    req = quiz_request(data)
    if not req:
        return JSONResponse({"error": "Provide >= 20 characters"}, status_code=400)

    tier = get_tier(request)
    messages = quiz_messages(req["text"], req["subject"], req["difficulty"], req["mode"])

    def on_usage(model, usage):
        log_usage_safe(user_id, ip, model, usage, {"feature": "quiz-stream", "mode": req["mode"]})

    def generate():
        stream = QuestionStream(difficulty=req["difficulty"], shuffle=bool(data.get("shuffle")))
        try:
            for chunk in llm.stream_with_fallback(messages, tier, "fast", on_usage=on_usage, log_tag="[quiz/stream]",
                                                  temperature=0.4, max_tokens=llm.quiz_max_tokens(req["mode"]),
                                                  reasoning_effort="low"):
                for question in stream.feed(chunk):
                    yield to_ndjson(question)
            for question in stream.finish():
                yield to_ndjson(question)
        except Exception as e:
            logger.error("[quiz/stream] error: %s", e)
            yield json.dumps({"error": str(e)}) + "\n"
        if stream.diagnostics:
            logger.warning("[quiz] latex-anomalies %s", json.dumps({"stream": True, "issues": stream.diagnostics}))

    return StreamingResponse(generate(), media_type="application/x-ndjson", headers=NO_STORE)

async def api_generate_stream(request: Request):
    user_id = get_user_id(request)
    ip = get_client_ip(request)
    if over_limit(user_id):
        return JSONResponse({"error": "Usage limit exceeded"}, status_code=403)
    data = await read_json(request)
    text = data.get("text")
    if not isinstance(text, str) or len(text.strip()) < 40:
        return JSONResponse({"error": "Provide at least ~40 characters of study text."}, status_code=400)
    subject = data.get("subject") or "Algebra 1"
    tier = get_tier(request)
    messages = lesson_messages(text, subject)

    def on_usage(model, usage):
        log_usage_safe(user_id, ip, model, usage, {"feature": "lesson-stream"})

    def generate():
        logger.info("[gen/stream] request-start subject=%s", subject)
        try:
            yield from llm.stream_with_fallback(messages, tier, "fast", on_usage=on_usage, log_tag="[gen/stream]",
                                                temperature=1, max_tokens=LESSON_MAX_TOKENS)
        except Exception as e:
            logger.error("[gen/stream] error: %s", e)

    return StreamingResponse(generate(), media_type="text/plain; charset=utf-8", headers=NO_STORE)

async def api_support_chat(request: Request):
    user_id = get_user_id(request)
    ip = get_client_ip(request)
    if not rate.take(ip):
        return JSONResponse({"error": "Rate limit exceeded"}, status_code=429)
    data = await read_json(request)
    messages = sanitize_messages(data.get("messages"))
    if not messages or all(m["role"] != "user" for m in messages):
        return JSONResponse({"error": "Provide at least one user message."}, status_code=400)
    context = data.get("context").strip() if isinstance(data.get("context"), str) else ""

    tier = get_tier(request)
    model = llm.model_identifier(llm.get_model_config(tier, "fast"))
    transcript = "\n".join(f"{m['role'].upper()}: {m['content']}" for m in messages)
    try:
        agent = make_support_agent(context, tier)
        reply = await run_in_threadpool(
            llm.run_agent_task, agent,
            f"Conversation so far:\n{transcript}\n\nReply to the learner's last message.",
            "A short, friendly reply in plain text.",
        )
    except Exception as e:
        logger.error("[support-chat] error: %s", e)
        log_usage_safe(user_id, ip, model, None, {"feature": "support-chat", "error": str(e)})
        return JSONResponse({"error": str(e) or "Support chat failed"}, status_code=500)

    log_usage_safe(user_id, ip, model, None,
                   {"feature": "support-chat", "messageCount": len(messages), "hasContext": bool(context)})
    reply = (reply or "").strip() or "I am here to help. Could you rephrase that question for me?"
    return JSONResponse({"reply": reply})

async def api_attempt(request: Request):
    user_id = get_user_id(request)
    if not user_id:
        return JSONResponse({"error": "Not authenticated"}, status_code=401)
    data = await read_json(request)
    event = "question-correct" if data.get("event") == "question-correct" else "lesson-finish"
    subject = data.get("subject").strip() if isinstance(data.get("subject"), str) and data.get("subject").strip() else None

    def is_number(v):
        return isinstance(v, (int, float)) and not isinstance(v, bool)

    if event == "lesson-finish":
        lesson_id = data.get("lesson_id").strip() if isinstance(data.get("lesson_id"), str) else ""
        if not lesson_id or not is_number(data.get("correct_count")) or not is_number(data.get("total")):
            return JSONResponse({"error": "Invalid payload"}, status_code=400)
    else:
        lesson_id = None

    result = db.record_attempt(
        user_id,
        lesson_id=lesson_id,
        subject=subject,
        correct_count=int(data.get("correct_count")) if is_number(data.get("correct_count")) else 0,
        total=int(data.get("total")) if is_number(data.get("total")) else 0,
        event=event,
        points_per_correct=data.get("points_per_correct") if is_number(data.get("points_per_correct")) else db.POINTS_PER_CORRECT,
        skip_points=data.get("skip_points") is True,
        correct_increment=int(data.get("correct_increment")) if is_number(data.get("correct_increment")) else 1,
    )
    return JSONResponse(result)

async def api_stats(request: Request):
    user_id = get_user_id(request)
    if not user_id:
        return JSONResponse({"lessons": 0, "correct": 0, "total": 0, "pct": 0, "points": 0, "streak": 0, "subjects": {}})
    return JSONResponse(db.get_stats(user_id))

async def api_history(request: Request):
    user_id = get_user_id(request)
    if not user_id:
        return JSONResponse([])
    return JSONResponse(db.get_history(user_id))

async def api_achievements(request: Request):
    user_id = get_user_id(request)
    if not user_id:
        return JSONResponse({"unlocked": [], "all": db.ACHIEVEMENTS})
    return JSONResponse({"unlocked": db.get_unlocked_achievements(user_id), "all": db.ACHIEVEMENTS})

async def api_usage(request: Request):
    user_id = get_user_id(request)
    if not user_id:
        return JSONResponse({"total_cost": 0, "limit": db.USAGE_LIMIT_USD, "models": {}})
    return JSONResponse(db.get_usage_summary(user_id))

async def api_leaderboard(request: Request):
    by = request.query_params.get("by", "points")
    if by not in db.LEADERBOARD_ORDER:
        by = "points"
    period = request.query_params.get("period", "all")
    if period not in db.LEADERBOARD_PERIODS or by == "streak":
        period = "all"
    try:
        limit = int(request.query_params.get("limit", 20))
    except ValueError:
        limit = 20
    limit = max(1, min(limit, 100))
    entries = db.get_leaderboard(by=by, period=period, limit=limit)
    user_id = get_user_id(request)
    rank = db.get_leaderboard_rank(user_id, by=by) if user_id else None
    return JSONResponse({"by": by, "period": period, "entries": entries, "rank": rank})

# === App ===
routes = [
    Route("/api/format", api_format, methods=["POST"]),
    Route("/api/format/stream", api_format_stream, methods=["POST"]),
    Route("/api/generate/quiz", api_generate_quiz, methods=["POST"]),
    Route("/api/generate/quiz/stream", api_generate_quiz_stream, methods=["POST"]),
    Route("/api/generate/stream", api_generate_stream, methods=["POST"]),
    Route("/api/support/chat", api_support_chat, methods=["POST"]),
    Route("/api/attempt", api_attempt, methods=["POST"]),
    Route("/api/stats", api_stats),
    Route("/api/history", api_history),
    Route("/api/achievements", api_achievements),
    Route("/api/usage", api_usage),
    Route("/api/leaderboard", api_leaderboard),
]

app = Starlette(routes=routes)

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    print("\n  Lernex API")
    print("  Listening on http://localhost:8000\n")
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
