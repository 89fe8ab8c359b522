from types import SimpleNamespace

import pytest

import ai_service
from analysis_engine import score_snapshot
from conftest import RICH_PAGE, SECURE_HEADERS
from errors import AIServiceError
from models import PageSnapshot


class FakeMessages:
    """Stands in for AsyncAnthropic().messages; reply() maps a prompt to text or an exception."""

    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        answer = self.reply(kwargs["messages"][0]["content"])
        if isinstance(answer, Exception):
            raise answer
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=answer)],
            usage=SimpleNamespace(input_tokens=1000, output_tokens=200),
        )


def fake_client(reply):
    return SimpleNamespace(messages=FakeMessages(reply))


async def scored_page(services):
    snapshot = PageSnapshot(url="https://acme.example/", html=RICH_PAGE, headers=SECURE_HEADERS)
    return await score_snapshot(snapshot, deps=services.collaborators())


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def test_extract_json_from_fenced_block():
    assert ai_service.extract_json('```json\n{"a": 1}\n```') == {"a": 1}


def test_extract_json_skips_preamble_and_trailer():
    assert ai_service.extract_json('Here you go: {"a": {"b": "}"}} hope it helps') == {"a": {"b": "}"}}


def test_extract_json_repairs_truncation():
    assert ai_service.extract_json('{"a": [1, 2, {"b": "tex') == {"a": [1, 2, {"b": "tex"}]}


def test_extract_json_gives_up_on_prose():
    assert ai_service.extract_json("no json here") == {"raw_response": "no json here"}


def test_cost_table():
    assert ai_service.calculate_cost("claude-haiku-4-5", 1000, 200) == 0.002
    # unknown models are priced like the default model
    assert ai_service.calculate_cost("mystery", 1_000_000, 0) == 3.0


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

async def test_summarize(services):
    seo, content, security = await scored_page(services)
    client = fake_client(lambda prompt: '{"overallAssessment": "Good", "recommendations": []}')

    response = await ai_service.summarize(
        "https://acme.example/", seo, content, security,
        industry="plumbing", target_keywords=["plumber oslo"], client=client,
    )

    assert response.summary["overallAssessment"] == "Good"
    assert response.model == ai_service.CLAUDE_MODEL
    assert response.usage.tokens_used == 1200
    prompt = client.messages.calls[0]["messages"][0]["content"]
    assert "Industry: plumbing" in prompt
    assert '"plumber oslo"' in prompt
    assert "Omit competitorComparison" in prompt


async def test_summarize_premium_model(services):
    seo, content, security = await scored_page(services)
    client = fake_client(lambda prompt: "{}")
    response = await ai_service.summarize(
        "https://acme.example/", seo, content, security, premium=True, client=client,
    )
    assert response.model == ai_service.CLAUDE_PREMIUM_MODEL
    assert client.messages.calls[0]["model"] == ai_service.CLAUDE_PREMIUM_MODEL


async def test_summarize_rejects_prose(services):
    seo, content, security = await scored_page(services)
    with pytest.raises(AIServiceError):
        await ai_service.summarize(
            "https://acme.example/", seo, content, security,
            client=fake_client(lambda prompt: "Sorry, I cannot help with that."),
        )


async def test_empty_reply_is_an_error():
    with pytest.raises(AIServiceError):
        await ai_service.call_claude("system", "prompt", client=fake_client(lambda prompt: "  "))


def test_proposed_keywords():
    summary = {"keywordAnalysis": {
        "primaryKeywords": ["plumber", " drains ", ""],
        "missingKeywords": ["boiler repair", "plumber"],
    }}
    assert ai_service.proposed_keywords(summary) == ["plumber", "drains", "boiler repair"]
    assert ai_service.proposed_keywords(summary, limit=2) == ["plumber", "drains"]
    assert ai_service.proposed_keywords({}) == []


# ---------------------------------------------------------------------------
# Keyword research
# ---------------------------------------------------------------------------

async def test_research_keywords_normalises_entries():
    reply = (
        '```json\n{"keywords": ['
        '{"keyword": "rørlegger oslo", "searchVolume": 1200, "cpc": "3.5", '
        '"competition": "Høy", "competitionScore": 70, "intent": "commercial", '
        '"difficulty": 40, "trend": "stigende"},'
        '{"searchVolume": 10}'
        "]}\n```"
    )
    response = await ai_service.research_keywords(["rørlegger oslo"], "plumbing", client=fake_client(lambda p: reply))
    assert len(response.keywords) == 1
    kw = response.keywords[0]
    assert kw.keyword == "rørlegger oslo"
    assert kw.cpc == 3.5
    assert kw.competition == "high"
    assert kw.trend == "rising"
    assert response.usage.tokens_used == 1200


async def test_research_keywords_without_input_makes_no_call():
    client = fake_client(lambda p: "{}")
    response = await ai_service.research_keywords([], client=client)
    assert response.keywords == []
    assert client.messages.calls == []


async def test_research_keywords_needs_a_list():
    with pytest.raises(AIServiceError):
        await ai_service.research_keywords(["x"], client=fake_client(lambda p: '{"note": "none"}'))


# ---------------------------------------------------------------------------
# AI visibility
# ---------------------------------------------------------------------------

def test_judge_answer():
    assert ai_service.judge_answer("Acme.example sells pipes.", "acme.example", None) == (True, True)
    assert ai_service.judge_answer("I'm not sure, but acme.example sells pipes", "acme.example", None) == (False, True)
    assert ai_service.judge_answer("Kjenner ikke til dette firmaet.", "acme.example", "Acme") == (False, False)
    assert ai_service.judge_answer("Plumbing is a trade.", "acme.example", None) == (False, True)


def test_visibility_score_and_level():
    assert ai_service.visibility_score(0, 0, 0) == 0
    assert ai_service.visibility_score(4, 4, 4) == 100
    assert ai_service.visibility_level(75)[0] == "high"
    assert ai_service.visibility_level(50)[0] == "medium"
    assert ai_service.visibility_level(10)[0] == "low"
    assert ai_service.visibility_level(0)[0] == "none"


def test_visibility_queries():
    queries = ai_service.visibility_queries("acme.example", None, ["a", "b", "c"])
    assert queries == [
        "What do you know about acme.example?",
        "What does acme.example offer?",
        "Which companies are best at a?",
        "Which companies are best at b?",
    ]


async def test_check_visibility_skips_failed_queries():
    def reply(prompt):
        if prompt.startswith("What do you know"):
            return "Acme Plumbing is a plumbing company in Oslo."
        if prompt.startswith("Can you recommend"):
            return ""
        return "I don't know any specific companies for that."

    response = await ai_service.check_visibility(
        "acme.example", "Acme Plumbing", ["plumber oslo"], client=fake_client(reply),
    )
    vis = response.visibility
    assert vis.queries_tested == 2
    assert vis.times_cited == 1
    assert vis.times_mentioned == 1
    # (1 * 2 + 1) / (2 * 3)
    assert vis.score == 50
    assert vis.level == "medium"
    assert response.usage.tokens_used == 2400


async def test_check_visibility_all_failed():
    with pytest.raises(AIServiceError):
        await ai_service.check_visibility(
            "acme.example", client=fake_client(lambda p: AIServiceError("down")),
        )
