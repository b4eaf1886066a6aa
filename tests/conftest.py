from __future__ import annotations

import json
import os
from pathlib import Path
import tempfile
from typing import Any, Callable
from uuid import UUID, uuid4

_DB_DIR = Path(tempfile.mkdtemp(prefix="content-engine-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR / 'test.db'}"
os.environ["JOB_QUEUE_BACKEND"] = "poll"
os.environ["LLM_DEFAULT_PROVIDER"] = "fake"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import yaml

from collaborators.images import set_image_service
from collaborators.scraper import set_scraper
from core.cache import invalidate_all
from db import models
from db.base import Base
from db.repository import GLOBAL_SCOPE, insert, transaction
from db.session import engine
from llm.gateway import LLMGateway
from llm.providers import CompletionRequest, CompletionResult, LLMError, register_provider
from prompts.store import create_template

ROOT = Path(__file__).resolve().parents[1]

LONG_BODY = "\n\n".join(
    [
        "Community volunteers in the northern town opened a new food bank on Saturday morning, "
        "serving more than two hundred families during its first week of operation.",
        "Organizers said the project began last winter when local churches noticed rising demand "
        "for emergency groceries. Donations arrived from schools, businesses and farmers nearby.",
        "The mayor thanked the volunteers and promised council support for a permanent building. "
        "Several residents described the welcome they received as warm and dignified.",
        "Plans for the coming months include a cooking class, a debt advice clinic and weekly "
        "deliveries to elderly people who cannot travel - all staffed by trained helpers.",
        "Leaders hope other towns will copy the model. They published a short guide explaining "
        "how partnerships between congregations and charities can be set up quickly.",
    ]
)

CANNED_OUTPUTS: dict[str, Any] = {
    "blog_post": {
        "title": "Hope on the High Street",
        "body": LONG_BODY,
        "meta_description": "A new food bank shows what a community can do together.",
        "tags": ["community", "food bank"],
    },
    "social_media": {
        "posts": [
            {"platform": "facebook", "text": "A town came together.", "hashtags": ["#community"]},
            {"platform": "linkedin", "text": "Partnerships that work.", "hashtags": ["#impact"]},
        ]
    },
    "video_script": {
        "scripts": [
            {"title": "Quick take", "duration": 30, "script": "Two hundred families fed.", "visual_suggestions": ["crates"]},
        ]
    },
    "email_newsletter": {"subject": "This week", "preview_text": "Food bank opens", "body": "Read more."},
    "sermon_notes": {"theme": "Generosity", "scripture_references": ["Acts 2:45"], "outline": ["Need"], "application": "Give."},
    "image_prompt": {"image_prompt": "Crates of vegetables in morning light", "alt_text": "Food crates"},
    "analysis": "0.85",
}

PLAIN_OUTPUTS = {
    "prayer_points": "Pray for the families who are struggling this winter.\n\nPray for the volunteers serving every day.",
    "devotional": "Acts 2:45. Reflection on sharing what we have. Amen.",
}


class FakeProvider:
    """In-process provider; ``script`` entries are consumed first, then canned output by category."""

    name = "fake"

    def __init__(self) -> None:
        self.requests: list[CompletionRequest] = []
        self.script: list[Any] = []
        self.handler: Callable[[CompletionRequest], Any] | None = None

    def default_model(self) -> str:
        return "fake-model"

    def _canned(self, request: CompletionRequest) -> str:
        if request.category in PLAIN_OUTPUTS:
            return PLAIN_OUTPUTS[request.category]
        value = CANNED_OUTPUTS.get(request.category, {"content": f"generated {request.category}"})
        return value if isinstance(value, str) else json.dumps(value)

    def complete(self, request: CompletionRequest) -> CompletionResult:
        self.requests.append(request)
        item = self.script.pop(0) if self.script else None
        if item is None and self.handler is not None:
            item = self.handler(request)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, CompletionResult):
            return item
        text = item if isinstance(item, str) else self._canned(request)
        return CompletionResult(text=text, stop_reason="STOP", tokens_in=len(request.prompt) // 4, tokens_out=len(text) // 4)


def transient_error(category: str = "blog_post") -> LLMError:
    return LLMError(code="http_503", message="upstream unavailable", provider="fake", category=category, retryable=True)


@pytest.fixture(autouse=True)
def _fresh_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    invalidate_all()
    yield
    set_scraper(None)
    set_image_service(None)
    invalidate_all()


@pytest.fixture
def fake_llm() -> FakeProvider:
    provider = FakeProvider()
    register_provider("fake", lambda: provider)
    return provider


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def gateway(fake_llm, sleeps) -> LLMGateway:
    return LLMGateway(sleep=sleeps.append)


def make_tenant(name: str = "Test Tenant", active: bool = True) -> UUID:
    account_id = uuid4()
    insert(models.Tenant, {"account_id": account_id, "name": name, "active": active})
    return account_id


@pytest.fixture
def tenant() -> UUID:
    return make_tenant()


@pytest.fixture
def other_tenant() -> UUID:
    return make_tenant("Other Tenant")


def make_article(account_id: UUID, **values: Any) -> int:
    defaults = {
        "account_id": account_id,
        "title": "New food bank opens its doors",
        "url": f"https://news.example.org/{uuid4()}",
        "body": LONG_BODY,
        "summary": "Volunteers opened a food bank that served two hundred families.",
        "source_ref": "Example News",
        "status": "analyzed",
        "relevance_score": 0.9,
    }
    defaults.update(values)
    return insert(models.SourceArticle, defaults).id


def seed_default_templates(scope=GLOBAL_SCOPE) -> dict[str, int]:
    """Load every YAML definition under templates/ in priority order."""
    definitions = [yaml.safe_load(path.read_text()) for path in sorted((ROOT / "templates").glob("*.yaml"))]
    definitions.sort(key=lambda data: data["ui_config"]["priority"])
    return {data["category"]: create_template(data, scope).template_id for data in definitions}


def count(model, **filters: Any) -> int:
    with transaction() as session:
        query = session.query(model)
        for key, value in filters.items():
            query = query.filter(getattr(model, key) == value)
        return query.count()
