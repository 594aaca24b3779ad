import os
import logging
from dataclasses import dataclass
from functools import lru_cache

# Suppress noisy logs
logging.getLogger("LiteLLM").setLevel(logging.CRITICAL)
logging.getLogger("litellm").setLevel(logging.CRITICAL)

from dotenv import load_dotenv
load_dotenv()

import litellm
from crewai import Crew, LLM, Task

logger = logging.getLogger("lernex.llm")

TIERS = ("free", "plus", "premium")
SPEEDS = ("fast", "slow")


@dataclass(frozen=True)
class ModelConfig:
    provider: str
    model: str
    base_url: str
    api_key_env: str

    @property
    def api_key(self):
        return os.getenv(self.api_key_env, "")

    @property
    def litellm_model(self):
        # every provider speaks the OpenAI chat API
        return f"openai/{self.model}"


@dataclass
class Completion:
    text: str
    usage: dict
    model: str


@dataclass
class StreamDelta:
    content: str = ""
    reasoning: str = ""
    usage: dict = None


MODELS = {
    ("free", "fast"): ModelConfig("groq", "openai/gpt-oss-20b", "https://api.groq.com/openai/v1", "GROQ_API_KEY"),
    ("free", "slow"): ModelConfig("deepinfra", "openai/gpt-oss-20b", "https://api.deepinfra.com/v1/openai", "DEEPINFRA_API_KEY"),
    ("paid", "fast"): ModelConfig("cerebras", "gpt-oss-120b", "https://api.cerebras.ai/v1", "CEREBRAS_API_KEY"),
    ("paid", "slow"): ModelConfig("lightningai", "lightning-ai/gpt-oss-120b", "https://lightning.ai/api/v1", "LIGHTNINGAI_API_KEY"),
}

MODEL_IDENTIFIERS = {
    "groq": "groq/gpt-oss-20b",
    "deepinfra": "deepinfra/gpt-oss-20b",
    "cerebras": "cerebras/gpt-oss-120b",
    "lightningai": "lightningai/gpt-oss-120b",
}

# mode -> (env var, default, low, high)
QUIZ_TOKEN_LIMITS = {
    "quick": ("QUIZ_MAX_TOKENS_QUICK", 260, 220, 320),
    "mini": ("QUIZ_MAX_TOKENS_MINI", 620, 360, 900),
    "full": ("QUIZ_MAX_TOKENS_FULL", 1050, 700, 1400),
}


def user_tier(value):
    tier = (value or "").strip().lower()
    return tier if tier in TIERS else "free"


def get_model_config(tier="free", speed="fast"):
    """Free tier gets the small model, plus/premium the large one; speed picks the provider."""
    group = "paid" if user_tier(tier) in ("plus", "premium") else "free"
    return MODELS[(group, "slow" if speed == "slow" else "fast")]


def model_identifier(config):
    """Name used for pricing in the usage log."""
    return MODEL_IDENTIFIERS.get(config.provider, config.model)


@lru_cache(maxsize=None)
def get_llm(tier="free", speed="fast"):
    config = get_model_config(tier, speed)
    return LLM(model=config.litellm_model, base_url=config.base_url, api_key=config.api_key)


def quiz_max_tokens(mode):
    env_var, default, low, high = QUIZ_TOKEN_LIMITS.get(mode, QUIZ_TOKEN_LIMITS["mini"])
    try:
        value = int(os.getenv(env_var, str(default)))
    except ValueError:
        value = default
    return min(high, max(low, value or default))


def _usage_dict(usage):
    if not usage:
        return None
    if isinstance(usage, dict):
        prompt, completion = usage.get("prompt_tokens"), usage.get("completion_tokens")
    else:
        prompt, completion = getattr(usage, "prompt_tokens", None), getattr(usage, "completion_tokens", None)
    return {"input_tokens": prompt, "output_tokens": completion}


def _request_args(config, messages, params):
    args = {
        "model": config.litellm_model,
        "api_base": config.base_url,
        "api_key": config.api_key,
        "messages": messages,
    }
    args.update({k: v for k, v in params.items() if v is not None})
    return args


def complete(messages, tier="free", speed="fast", **params):
    config = get_model_config(tier, speed)
    response = litellm.completion(**_request_args(config, messages, params))
    text = response.choices[0].message.content or ""
    return Completion(text=text, usage=_usage_dict(getattr(response, "usage", None)), model=model_identifier(config))


def stream_completion(messages, tier="free", speed="fast", **params):
    config = get_model_config(tier, speed)
    args = _request_args(config, messages, params)
    args["stream"] = True
    args["stream_options"] = {"include_usage": True}
    for chunk in litellm.completion(**args):
        usage = _usage_dict(getattr(chunk, "usage", None))
        choices = getattr(chunk, "choices", None) or []
        delta = choices[0].delta if choices else None
        content = (getattr(delta, "content", None) or "") if delta else ""
        reasoning = (getattr(delta, "reasoning_content", None) or "") if delta else ""
        if content or reasoning or usage:
            yield StreamDelta(content=content, reasoning=reasoning, usage=usage)


def stream_with_fallback(messages, tier="free", speed="fast", on_usage=None, log_tag="[llm]", **params):
    """Yield content from a streamed completion.

    If the stream fails or produces no content, one non-streaming request is
    made instead and its text is yielded whole. Errors from that request
    propagate to the caller.
    """
    produced = False
    usage = None
    try:
        for delta in stream_completion(messages, tier, speed, **params):
            if delta.usage:
                usage = delta.usage
            if delta.content:
                produced = True
                yield delta.content
    except Exception as e:
        if produced:
            raise
        logger.warning("%s stream failed, falling back: %s", log_tag, e)

    if not produced:
        logger.warning("%s empty stream, falling back to non-streaming", log_tag)
        result = complete(messages, tier, speed, **params)
        usage = result.usage
        if result.text:
            yield result.text

    if on_usage and usage:
        on_usage(model_identifier(get_model_config(tier, speed)), usage)


# === Agent helpers ===
def run_agent_task(agent, description, expected_output):
    task = Task(description=description, expected_output=expected_output, agent=agent)
    crew = Crew(agents=[agent], tasks=[task], verbose=False)
    return str(crew.kickoff())
