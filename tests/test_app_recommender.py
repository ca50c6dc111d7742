import json
import threading
from dataclasses import replace
from types import SimpleNamespace

import httpx
import pytest

from corpwell.models.app_assignment import AppName
from corpwell.schemas.onboarding import Priority
from corpwell.schemas.roster import EmployeeRecord
from corpwell.services.app_recommender import (
    RecommendationClient,
    build_recommendation_prompt,
    fallback_recommendations,
    parse_recommendation_payload,
)
from corpwell.services.errors import RecommendationError


@pytest.fixture()
def anthropic_settings(settings):
    return replace(
        settings,
        recommender_provider="anthropic",
        anthropic_api_key="test-key",
        anthropic_base_url="https://ai.test",
    )


def _client(settings, handler):
    calls = []

    def recording(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return handler(request)

    http = httpx.Client(transport=httpx.MockTransport(recording))
    return RecommendationClient(settings, http_client=http), calls


def _messages_response(payload) -> httpx.Response:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return httpx.Response(200, json={"content": [{"type": "text", "text": text}]})


def test_menopause_profile_falls_back_without_retrying(anthropic_settings):
    record = EmployeeRecord(
        row_index=2, email="pat@x.com", age=50, gender="female",
        include_spouse=True, spouse_email="sam@x.com",
    )

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, calls = _client(anthropic_settings, unreachable)
    recs = client.recommend(record, tenant_id="t1")

    assert len(calls) == 1
    assert [(r.app, r.priority, r.include_spouse) for r in recs] == [
        (AppName.menowellness, Priority.high, False),
        (AppName.supportpartner, Priority.medium, True),
    ]


def test_fallback_is_deterministic():
    record = EmployeeRecord(
        row_index=2, email="a@x.com", age=29, marital_status="married",
        department="Sales", health_conditions=["Alcohol use"],
    )
    first = fallback_recommendations(record)
    second = fallback_recommendations(record)

    assert first == second
    assert [r.app for r in first] == [AppName.fertilitytracker, AppName.innerarchitect, AppName.soberpal]


def test_fallback_caps_at_three_and_can_be_empty():
    busy = EmployeeRecord(
        row_index=2, age=52, gender="female", include_spouse=True,
        department="finance", health_conditions=["addiction"],
    )
    assert len(fallback_recommendations(busy)) == 3
    assert fallback_recommendations(EmployeeRecord(row_index=2, age=40)) == []


def test_ai_recommendations_are_used(anthropic_settings):
    payload = {"recommendations": [
        {"app": "InnerArchitect", "reason": "stress", "priority": "high", "includeSpouse": False},
        {"app": "myconfidant", "reason": "relationship", "priority": "low", "includeSpouse": True},
    ]}
    client, calls = _client(anthropic_settings, lambda r: _messages_response(payload))
    recs = client.recommend(EmployeeRecord(row_index=2, email="a@x.com"))

    assert [(r.app, r.priority, r.include_spouse) for r in recs] == [
        (AppName.innerarchitect, Priority.high, False),
        (AppName.myconfidant, Priority.low, True),
    ]
    sent = calls[0]
    assert sent.url.path == "/v1/messages"
    assert sent.headers["x-api-key"] == "test-key"
    assert "anthropic-version" in sent.headers


def test_json_wrapped_in_prose_is_extracted(anthropic_settings):
    text = 'Here you go:\n{"recommendations": [{"app": "soberpal", "reason": "r", "priority": "high"}]}\nThanks'
    client, _ = _client(anthropic_settings, lambda r: _messages_response(text))

    recs = client.recommend(EmployeeRecord(row_index=2, email="a@x.com"))
    assert [r.app for r in recs] == [AppName.soberpal]


def test_out_of_catalog_apps_never_come_back(anthropic_settings):
    payload = {"recommendations": [
        {"app": "crypto-coach", "reason": "r", "priority": "high"},
        {"app": "menowellness", "reason": "r", "priority": "urgent"},
    ]}
    record = EmployeeRecord(row_index=2, email="a@x.com", age=48, gender="female")
    client, _ = _client(anthropic_settings, lambda r: _messages_response(payload))

    recs = client.recommend(record)
    # nothing usable survived the catalog check, so the rule table answered
    assert recs == fallback_recommendations(record)
    assert all(r.app in set(AppName) for r in recs)


def test_http_error_falls_back(anthropic_settings):
    client, calls = _client(anthropic_settings, lambda r: httpx.Response(529, text="overloaded"))
    recs = client.recommend(EmployeeRecord(row_index=2, email="a@x.com", department="executive"))

    assert len(calls) == 1
    assert [r.app for r in recs] == [AppName.innerarchitect]


def test_missing_api_key_makes_no_call(settings):
    client, calls = _client(replace(settings, recommender_provider="anthropic"), lambda r: httpx.Response(200))
    client.recommend(EmployeeRecord(row_index=2, email="a@x.com"))
    assert calls == []


def test_openai_provider(settings):
    captured = {}

    def create(**kwargs):
        captured.update(kwargs)
        content = json.dumps({"recommendations": [{"app": "pregnancycompanion", "reason": "r", "priority": "medium"}]})
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])

    fake_openai = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    client = RecommendationClient(replace(settings, recommender_provider="openai"), openai_client=fake_openai)

    recs = client.recommend(EmployeeRecord(row_index=2, email="a@x.com"))
    assert [r.app for r in recs] == [AppName.pregnancycompanion]
    assert captured["response_format"] == {"type": "json_object"}


def test_parse_payload_shape_errors():
    with pytest.raises(RecommendationError):
        parse_recommendation_payload({"apps": []})
    assert parse_recommendation_payload({"recommendations": []}) == []

    many = {"recommendations": [{"app": a.value} for a in AppName]}
    assert len(parse_recommendation_payload(many)) == 3


def test_prompt_lists_catalog_and_profile():
    prompt = build_recommendation_prompt(
        EmployeeRecord(row_index=2, age=33, department="Finance", health_conditions=["asthma"])
    )
    for app in AppName:
        assert app.value in prompt
    assert "Age: 33" in prompt
    assert "asthma" in prompt


def test_worker_threads_share_one_http_client(anthropic_settings):
    client = RecommendationClient(anthropic_settings)
    barrier = threading.Barrier(8)
    seen = []

    def grab():
        barrier.wait()
        seen.append(client._http_client())

    threads = [threading.Thread(target=grab) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(seen) == 8
    assert all(c is seen[0] for c in seen)
    client.close()
    assert seen[0].is_closed
