"""Shared fixtures for classification tests."""

from typing import Callable, Iterator

import pytest

from hsclassify.classification.config import ClassificationSettings
from hsclassify.classification.knowledge_base import get_default_knowledge_base
from hsclassify.classification.notifications import RecordingNotifier
from hsclassify.classification.repository import InMemoryClassificationRepository
from hsclassify.classification.service import ClassificationService


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in ("HSC_DATABASE_URL", "HSC_REDIS_URL", "HSC_WEBHOOK_URL", "HSC_KNOWLEDGE_BASE_PATH"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def knowledge_base():
    return get_default_knowledge_base()


@pytest.fixture()
def repository() -> InMemoryClassificationRepository:
    return InMemoryClassificationRepository()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def make_service(repository, knowledge_base, notifier) -> Callable[..., ClassificationService]:
    """Factory for services sharing the test repository and notifier."""

    def _factory(**overrides) -> ClassificationService:
        settings = ClassificationSettings(**overrides)
        return ClassificationService(repository, knowledge_base, settings=settings, notifier=notifier)

    return _factory


@pytest.fixture()
def service(make_service) -> ClassificationService:
    return make_service()


@pytest.fixture()
def direct_service(make_service) -> ClassificationService:
    """Service that never asks clarification questions."""

    return make_service(max_questions=0)


@pytest.fixture()
def classify(direct_service) -> Iterator[Callable[[str], object]]:
    def _run(description: str, context=None):
        return direct_service.start_classification(description, context)

    yield _run
