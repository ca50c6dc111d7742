"""
App recommendation engine for newly onboarded employees.

The AI capability is asked first. Anything it returns is checked against the
app catalog; out-of-catalog entries are dropped. Any failure on that path
(no key, network, bad JSON, nothing usable) falls back to a fixed rule table
that never leaves the process.
"""

import json
import logging
import threading
from typing import Optional

import httpx
from pydantic import ValidationError

from corpwell.config import OnboardingSettings
from corpwell.models.app_assignment import APP_DESCRIPTIONS, AppName
from corpwell.schemas.onboarding import Priority, Recommendation
from corpwell.schemas.roster import EmployeeRecord
from corpwell.services.errors import RecommendationError

logger = logging.getLogger(__name__)

MAX_RECOMMENDATIONS = 3
ANTHROPIC_VERSION = "2023-06-01"

HIGH_STRESS_DEPARTMENTS = {"sales", "executive", "finance"}
ADDICTION_KEYWORDS = ("addiction", "alcohol")

CATALOG = {app.value for app in AppName}


RECOMMENDER_SYSTEM_PROMPT = """You are a healthcare wellness expert specializing in employee wellness program optimization. You have deep knowledge of health conditions, life stages, and workplace wellness needs.

Your role is to recommend the most appropriate wellness apps from a fixed catalog based on employee profiles. Consider medical accuracy, life stage appropriateness, and evidence-based wellness interventions.

Only recommend apps from the catalog you are given. Always respond in valid JSON."""


def build_recommendation_prompt(record: EmployeeRecord) -> str:
    apps = "\n".join(f"- {app.value}: {desc}" for app, desc in APP_DESCRIPTIONS.items())
    conditions = ", ".join(record.health_conditions) or "None specified"
    return (
        "Based on the following employee profile, recommend the most appropriate wellness apps "
        "from our ecosystem.\n\n"
        f"Available Apps:\n{apps}\n\n"
        "Employee Profile:\n"
        f"- Age: {record.age or 'Not provided'}\n"
        f"- Gender: {record.gender or 'Not provided'}\n"
        f"- Marital Status: {record.marital_status or 'Not provided'}\n"
        f"- Department: {record.department or 'Not provided'}\n"
        f"- Has Dependents: {'Yes' if record.has_dependents else 'No'}\n"
        f"- Include Spouse: {'Yes' if record.include_spouse else 'No'}\n"
        f"- Health Conditions: {conditions}\n"
        f"- Stress Level: {record.stress_level or 'Not provided'}\n\n"
        "Please recommend 1-3 most relevant apps with brief reasoning. Consider:\n"
        "1. Life stage and demographics\n"
        "2. Relationship status and spouse inclusion\n"
        "3. Department stress levels\n"
        "4. Specific health conditions mentioned\n\n"
        "Respond in JSON format:\n"
        '{"recommendations": [{"app": "app_name", "reason": "brief explanation", '
        '"priority": "high|medium|low", "includeSpouse": true}]}'
    )


def _extract_json(text: str) -> dict:
    """Models sometimes wrap the JSON object in prose; take the outermost braces."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise RecommendationError("AI response did not contain JSON")
        try:
            return json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise RecommendationError(f"AI response JSON is malformed: {e}") from e


def parse_recommendation_payload(payload) -> list[Recommendation]:
    """Strict shape check of an AI response. Out-of-catalog apps are dropped."""
    if not isinstance(payload, dict) or not isinstance(payload.get("recommendations"), list):
        raise RecommendationError("Invalid recommendation format")

    entries = payload["recommendations"]
    kept: list[Recommendation] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        app = str(entry.get("app") or "").strip().lower()
        if app not in CATALOG:
            logger.info("Dropping out-of-catalog app recommendation: %r", entry.get("app"))
            continue
        try:
            rec = Recommendation.model_validate({**entry, "app": app})
        except ValidationError as e:
            logger.info("Dropping malformed recommendation for %s: %s", app, e.errors()[:1])
            continue
        if any(k.app == rec.app for k in kept):
            continue
        kept.append(rec)

    if entries and not kept:
        raise RecommendationError("No recommended app belongs to the catalog")
    return kept[:MAX_RECOMMENDATIONS]


def fallback_recommendations(record: EmployeeRecord) -> list[Recommendation]:
    """Deterministic rule table. Same profile in, same list out."""
    recs: list[Recommendation] = []
    age = record.age
    department = (record.department or "").strip().lower()

    if age is not None and age < 35 and record.marital_status == "married":
        recs.append(Recommendation(
            app=AppName.fertilitytracker,
            reason="Young married couple - fertility planning",
            priority=Priority.high,
            include_spouse=True,
        ))

    if age is not None and age > 45 and record.gender == "female":
        recs.append(Recommendation(
            app=AppName.menowellness,
            reason="Perimenopausal/menopausal age range",
            priority=Priority.high,
            include_spouse=False,
        ))
        if record.include_spouse:
            recs.append(Recommendation(
                app=AppName.supportpartner,
                reason="Partner support during menopause transition",
                priority=Priority.medium,
                include_spouse=True,
            ))

    if department in HIGH_STRESS_DEPARTMENTS:
        recs.append(Recommendation(
            app=AppName.innerarchitect,
            reason="High-stress department - personal development",
            priority=Priority.medium,
            include_spouse=False,
        ))

    conditions = [c.lower() for c in record.health_conditions]
    if any(keyword in c for c in conditions for keyword in ADDICTION_KEYWORDS):
        recs.append(Recommendation(
            app=AppName.soberpal,
            reason="Addiction recovery support",
            priority=Priority.high,
            include_spouse=False,
        ))

    return recs[:MAX_RECOMMENDATIONS]


class RecommendationClient:
    def __init__(
        self,
        settings: OnboardingSettings,
        http_client: Optional[httpx.Client] = None,
        openai_client=None,
    ):
        self.settings = settings
        self._http = http_client
        self._openai = openai_client
        self._owns_openai = False
        # batch worker threads share one instance
        self._client_lock = threading.Lock()

    def recommend(self, record: EmployeeRecord, tenant_id=None) -> list[Recommendation]:
        try:
            payload = self._request(record)
            recs = parse_recommendation_payload(payload)
        except Exception as e:
            logger.warning(
                "AI recommendations unavailable, using fallback: tenant=%s email=%s error=%s",
                tenant_id, record.email, e,
            )
            return fallback_recommendations(record)

        logger.info(
            "AI app recommendations generated: tenant=%s count=%d apps=%s",
            tenant_id, len(recs), [r.app.value for r in recs],
        )
        return recs

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
        if self._owns_openai:
            self._openai.close()

    def _http_client(self) -> httpx.Client:
        with self._client_lock:
            if self._http is None:
                self._http = httpx.Client(timeout=self.settings.recommender_timeout_seconds)
            return self._http

    def _openai_client(self):
        with self._client_lock:
            if self._openai is None:
                from openai import OpenAI
                self._openai = OpenAI(
                    api_key=self.settings.openai_api_key,
                    base_url=self.settings.openai_base_url,
                    timeout=self.settings.recommender_timeout_seconds,
                    max_retries=0,
                )
                self._owns_openai = True
            return self._openai

    # ---------- transports ----------

    def _request(self, record: EmployeeRecord) -> dict:
        provider = self.settings.recommender_provider
        prompt = build_recommendation_prompt(record)
        if provider == "anthropic":
            return self._request_messages_api(prompt)
        if provider == "openai":
            return self._request_openai(prompt)
        raise RecommendationError(f"AI recommendations disabled (provider={provider!r})")

    def _request_messages_api(self, prompt: str) -> dict:
        if not self.settings.anthropic_api_key:
            raise RecommendationError("ANTHROPIC_API_KEY not configured")

        r = self._http_client().post(
            self.settings.anthropic_base_url + "/v1/messages",
            headers={
                "Content-Type": "application/json",
                "x-api-key": self.settings.anthropic_api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            json={
                "model": self.settings.anthropic_model,
                "max_tokens": 1000,
                "temperature": 0.3,
                "system": RECOMMENDER_SYSTEM_PROMPT,
                "messages": [{"role": "user", "content": prompt}],
            },
        )
        if r.status_code >= 400:
            raise RecommendationError(f"Recommendation API error: {r.status_code} {r.text[:200]}")

        text = ""
        for block in (r.json().get("content") or []):
            if isinstance(block, dict) and block.get("type") == "text":
                text += block.get("text", "")
        if not text:
            raise RecommendationError("No content in recommendation response")
        return _extract_json(text)

    def _request_openai(self, prompt: str) -> dict:
        if self._openai is None and not self.settings.openai_api_key:
            raise RecommendationError("OPENAI_API_KEY not configured")

        resp = self._openai_client().chat.completions.create(
            model=self.settings.openai_model,
            messages=[
                {"role": "system", "content": RECOMMENDER_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.3,
            max_tokens=1000,
            response_format={"type": "json_object"},
        )
        content = resp.choices[0].message.content
        if not content:
            raise RecommendationError("No content in recommendation response")
        return _extract_json(content)
