from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from crawler.models import BrainContext
from crawler.utils import TransientHTTPError, http_status_to_exc, retry_async, safe_json_loads

logger = logging.getLogger(__name__)


# ---------- Reply schema ----------
class AdvisorReply(BaseModel):
    """
    Shape of the JSON object the model is asked to return. Lenient on
    purpose: missing or mistyped optional fields become None, and the
    brain applies defaults and clamps.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    verdict: str = Field(default="ok", description="'ok' or 'problem'.")
    message: str = Field(default="", description="1-2 sentence summary.")
    diagnosis: Optional[str] = Field(default=None, description="What happened and why.")
    user_recommendation: Optional[str] = Field(default=None, alias="userRecommendation")
    next_action: str = Field(default="CONTINUE", alias="nextAction")
    suggested_url: Optional[str] = Field(default=None, alias="suggestedUrl")
    wait_seconds: Optional[float] = Field(default=None, alias="waitSeconds")
    cycle_delay_seconds: Optional[float] = Field(default=None, alias="cycleDelaySeconds")

    @field_validator("wait_seconds", "cycle_delay_seconds", mode="before")
    @classmethod
    def _numbers_only(cls, v: Any) -> Optional[float]:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        return float(v)

    @field_validator("verdict", "message", "next_action", mode="before")
    @classmethod
    def _str_or_default(cls, v: Any, info) -> str:
        if isinstance(v, str):
            return v
        return {"verdict": "ok", "message": "", "next_action": "CONTINUE"}[info.field_name]

    @field_validator("diagnosis", "user_recommendation", "suggested_url", mode="before")
    @classmethod
    def _optional_str(cls, v: Any) -> Optional[str]:
        return v if isinstance(v, str) and v.strip() else None


SYSTEM_PROMPT = """
You supervise an adaptive job-board crawler. After each page visit you receive
the outcome and decide what the crawler should do next. Never skip a source.

Actions:
- RETRY_EXTRACTION: content small (<5000 chars) or 0 jobs on a page that should
  list jobs; the page may need more time to render. Give waitSeconds 8-15.
- TRY_NEW_URL: the URL is wrong; put a replacement in suggestedUrl if you know one.
- CAPTCHA_HUMAN_SOLVE: only when the page type is captcha_challenge.
- LOGIN_WALL_HUMAN: only when the page type is login_wall.
- CONTINUE: success or acceptable partial result.
- RETRY_CYCLE_SOON: transient failure; cycleDelaySeconds 10-60.

Many sites show "Sign in" in the navigation of normal pages; ignore a
validator login hint when the page type is listing or company_careers.
Output JSON only.
""".strip()


def build_prompt(ctx: BrainContext) -> str:
    lines = [
        "Analyze this crawl result and decide the next action.",
        "",
        f"Source: {ctx.source_name}",
        f"URL: {ctx.source_url}",
        f"Slug: {ctx.source_slug or 'none'}",
        f"Jobs extracted: {ctx.jobs_extracted}",
        f"Validation passed: {ctx.validation_passed}"
        + (f" ({ctx.validation_message})" if ctx.validation_message else ""),
    ]
    optional = (
        ("Content captured", f"{ctx.content_size} chars" if ctx.content_size is not None else None),
        ("Page type", ctx.page_type),
        ("Depth", ctx.depth),
        ("Frontier size", ctx.frontier_size),
        ("URL correction attempts", ctx.url_correction_attempts),
        ("Extraction strategy used", ctx.extraction_strategy),
    )
    lines += [f"{k}: {v}" for k, v in optional if v is not None]
    cycle = f"Cycle: {ctx.cycle}"
    if ctx.attempt is not None:
        cycle += f", attempt {ctx.attempt}"
    lines.append(cycle)
    if ctx.capture_history:
        lines += ["", "Capture history (saved snapshots):", ctx.capture_history]
    if ctx.page_excerpt:
        lines += ["", "Page excerpt (markdown):", ctx.page_excerpt]
    lines += ["", "Recent activity:", ctx.recent_log or "(none)", ""]
    lines.append(
        'Respond with JSON: {"verdict": "ok"|"problem", "message": str, "diagnosis": str, '
        '"userRecommendation": str, "nextAction": "RETRY_EXTRACTION"|"TRY_NEW_URL"|'
        '"CAPTCHA_HUMAN_SOLVE"|"LOGIN_WALL_HUMAN"|"CONTINUE"|"RETRY_CYCLE_SOON", '
        '"suggestedUrl": str, "waitSeconds": number, "cycleDelaySeconds": number}'
    )
    return "\n".join(lines)


class OllamaAdvisor:
    """
    Advisory reasoning via a local Ollama server (/api/chat, JSON mode).
    Raises on transport or schema problems; the brain turns that into CONTINUE.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: str = "http://localhost:11434",
        model: str = "qwen2.5:14b-instruct-q4_K_M",
        temperature: float = 0.1,
        max_tokens: int = 768,
    ) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @retry_async(max_attempts=2, initial_delay_ms=500, max_delay_ms=3000, jitter_ms=250)
    async def _chat(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self.client.post(f"{self.base_url}/api/chat", json=payload)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise TransientHTTPError(str(e) or type(e).__name__) from e
        exc = http_status_to_exc(resp.status_code)
        if exc is not None:
            raise exc
        return resp.json()

    async def analyze(self, ctx: BrainContext) -> Dict[str, Any]:
        payload = {
            "model": self.model,
            "stream": False,
            "format": "json",
            "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(ctx)},
            ],
        }
        body = await self._chat(payload)
        content = ((body or {}).get("message") or {}).get("content") or ""
        parsed = safe_json_loads(content)
        if parsed is None:
            raise ValueError(f"advisor returned non-JSON content: {content[:120]!r}")
        try:
            reply = AdvisorReply.model_validate(parsed)
        except ValidationError as e:
            raise ValueError(f"advisor reply failed validation: {e}") from e
        logger.debug("advisor reply: %s", reply.message or reply.next_action)
        return reply.model_dump(by_alias=True)


class NullAdvisor:
    """Advisor used when reasoning is disabled: always CONTINUE."""

    async def analyze(self, ctx: BrainContext) -> Dict[str, Any]:
        return AdvisorReply(message="advisor disabled").model_dump(by_alias=True)
