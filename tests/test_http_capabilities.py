import json

import httpx
import pytest

from components.advisor import AdvisorReply, NullAdvisor, OllamaAdvisor, build_prompt
from components.source_validator import SourceValidator, detect_blockers, has_job_content
from components.url_resolver import UrlResolver, _name_patterns
from crawler.models import BrainContext
from crawler.utils import NonRetryableHTTPError

JOBS_PAGE = "<html><body><h1>Open positions</h1><a href='/jobs/1-x'>Engineer</a></body></html>"


def _client(routes, calls=None):
    """routes: url -> (status, body). Anything else is a 404."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(str(request.url))
        status, body = routes.get(str(request.url), (404, "not here"))
        return httpx.Response(status, text=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ----------------------------
# SourceValidator
# ----------------------------

@pytest.mark.asyncio
async def test_validator_ok_with_job_indicators():
    async with _client({"https://example.com/jobs": (200, JOBS_PAGE)}) as client:
        res = await SourceValidator(client).validate("ex", "https://example.com/jobs")
    assert res.is_valid
    assert res.status_code == 200
    assert res.has_job_indicators
    assert res.error_message is None
    assert "valid" in res.summary()


@pytest.mark.asyncio
async def test_validator_client_error_is_not_retried():
    calls = []
    async with _client({}, calls) as client:
        res = await SourceValidator(client).validate("ex", "https://example.com/gone")
    assert not res.is_valid
    assert res.status_code == 404
    assert res.error_message == "HTTP 404"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_validator_flags_blockers():
    page = "<html><body>Please verify you are human to see open jobs</body></html>"
    async with _client({"https://example.com/jobs": (200, page)}) as client:
        res = await SourceValidator(client).validate("ex", "https://example.com/jobs")
    assert not res.is_valid
    assert res.blockers == ["captcha"]
    assert res.error_message == "Blocked: captcha detected"


def test_blocker_and_job_detection():
    assert detect_blockers("<p>Access Denied</p><p>Page not found</p>") == ["access_denied", "not_found"]
    # a recaptcha script alone is not a blocker
    assert detect_blockers('<script src="https://www.google.com/recaptcha/api.js"></script>') == []
    assert has_job_content("<div class='job-card'>")
    assert not has_job_content("<p>About us</p>")


# ----------------------------
# UrlResolver
# ----------------------------

@pytest.mark.asyncio
async def test_resolver_finds_same_domain_career_page():
    calls = []
    routes = {"https://example.com/careers": (200, JOBS_PAGE)}
    async with _client(routes, calls) as client:
        res = await UrlResolver(SourceValidator(client)).resolve("https://example.com/jobs", "Example", 0)
    assert res.corrected_url == "https://example.com/careers"
    assert res.method == "same_domain"
    assert res.attempts_made == 1
    # the broken URL itself is never a candidate
    assert "https://example.com/jobs" not in calls


@pytest.mark.asyncio
async def test_resolver_rejects_pages_without_job_content():
    routes = {
        "https://example.com/careers": (200, "<html><body>About our company</body></html>"),
        "https://example.com/openings": (200, JOBS_PAGE),
    }
    async with _client(routes) as client:
        res = await UrlResolver(SourceValidator(client)).resolve("https://example.com/jobs", "Example", 0)
    assert res.corrected_url == "https://example.com/openings"
    assert res.tried_urls == ["https://example.com/careers", "https://example.com/openings"]


@pytest.mark.asyncio
async def test_resolver_respects_attempt_budget():
    calls = []
    async with _client({}, calls) as client:
        resolver = UrlResolver(SourceValidator(client), max_attempts=5)
        res = await resolver.resolve("https://example.com/jobs", "Example", 3)
        assert res.corrected_url is None
        assert res.attempts_made == 2
        assert len(calls) == 2

        res = await resolver.resolve("https://example.com/jobs", "Example", 5)
        assert res.attempts_made == 0
        res = await resolver.resolve("not a url", "Example", 0)
        assert res.attempts_made == 0


def test_name_patterns():
    assert _name_patterns("Acme Corp (EU)") == [
        "https://careers.acmecorp.com",
        "https://acmecorp.com/careers",
        "https://acmecorp.com/jobs",
        "https://jobs.acmecorp.com",
    ]
    assert _name_patterns("!!!") == []


# ----------------------------
# Advisor
# ----------------------------

def _ctx(**kw):
    base = dict(source_name="Example", source_url="https://example.com/jobs", source_slug="example",
                jobs_extracted=0, validation_passed=False, validation_message="HTTP 503")
    base.update(kw)
    return BrainContext(**base)


def _ollama(content=None, status=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(json.loads(request.content))
        if status != 200:
            return httpx.Response(status, text="error")
        return httpx.Response(200, json={"message": {"role": "assistant", "content": content}})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_ollama_advisor_parses_reply():
    seen = []
    content = json.dumps({
        "verdict": "problem",
        "message": "Wrong URL",
        "nextAction": "TRY_NEW_URL",
        "suggestedUrl": "https://example.com/careers",
        "waitSeconds": "ten",
        "cycleDelaySeconds": 30,
    })
    async with _ollama(content, seen=seen) as client:
        advisor = OllamaAdvisor(client, base_url="http://ollama:11434/", model="tiny")
        reply = await advisor.analyze(_ctx(page_type="error", depth=0))

    assert reply["nextAction"] == "TRY_NEW_URL"
    assert reply["suggestedUrl"] == "https://example.com/careers"
    assert reply["waitSeconds"] is None
    assert reply["cycleDelaySeconds"] == 30.0
    assert reply["verdict"] == "problem"

    payload = seen[0]
    assert payload["model"] == "tiny"
    assert payload["format"] == "json"
    assert payload["stream"] is False
    assert payload["messages"][0]["role"] == "system"
    assert "Page type: error" in payload["messages"][1]["content"]


@pytest.mark.asyncio
async def test_ollama_advisor_tolerates_prose_around_json():
    async with _ollama('Here you go: {"nextAction": "CONTINUE", "message": "fine"}') as client:
        reply = await OllamaAdvisor(client).analyze(_ctx())
    assert reply["nextAction"] == "CONTINUE"
    assert reply["message"] == "fine"


@pytest.mark.asyncio
async def test_ollama_advisor_errors():
    async with _ollama("I cannot help with that") as client:
        with pytest.raises(ValueError):
            await OllamaAdvisor(client).analyze(_ctx())

    async with _ollama(status=404) as client:
        with pytest.raises(NonRetryableHTTPError):
            await OllamaAdvisor(client).analyze(_ctx())


@pytest.mark.asyncio
async def test_null_advisor_always_continues():
    reply = await NullAdvisor().analyze(_ctx())
    assert reply["nextAction"] == "CONTINUE"
    assert reply["message"] == "advisor disabled"


def test_reply_schema_is_lenient():
    r = AdvisorReply.model_validate({"nextAction": 5, "verdict": None, "suggestedUrl": "  ", "extra": 1})
    assert r.next_action == "CONTINUE"
    assert r.verdict == "ok"
    assert r.suggested_url is None


def test_build_prompt_includes_optional_sections():
    text = build_prompt(_ctx(
        content_size=1200, frontier_size=3, attempt=2, cycle=5,
        capture_history="listing jobs=0", page_excerpt="# Jobs", recent_log="INFO visited",
    ))
    assert "Validation passed: False (HTTP 503)" in text
    assert "Content captured: 1200 chars" in text
    assert "Frontier size: 3" in text
    assert "Cycle: 5, attempt 2" in text
    assert "Capture history" in text and "listing jobs=0" in text
    assert "# Jobs" in text
    assert "INFO visited" in text
    assert "Page type" not in text
