import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hsclassify.classification.config import ClassificationSettings
from hsclassify.classification.errors import AuditIntegrityViolation
from hsclassify.classification.models import Classification, ClassificationStatus, GRIStep
from hsclassify.classification.notifications import RecordingNotifier
from hsclassify.classification.recorder import DecisionRecorder
from hsclassify.classification.service import ClassificationService
from hsclassify.db.models import AuditEntryRecord, Base
from hsclassify.db.repository import SqlClassificationRepository


@pytest.fixture()
def session_factory():
    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture()
def sql_repository(session_factory):
    return SqlClassificationRepository(session_factory)


def test_classification_round_trip(sql_repository):
    classification = Classification(
        classification_id="sql-1",
        description="Men's cotton t-shirt, knitted",
        metadata={"context": {"description": "Men's cotton t-shirt, knitted"}},
    )
    sql_repository.create(classification)

    loaded = sql_repository.get("sql-1")
    assert loaded == classification
    assert sql_repository.list_ids() == ["sql-1"]
    assert sql_repository.get("missing") is None

    loaded.status = ClassificationStatus.NEEDS_REVIEW
    loaded.metadata["status_reason"] = "no matching provision found"
    sql_repository.save(loaded)
    assert sql_repository.get("sql-1").metadata["status_reason"] == "no matching provision found"


def test_decisions_and_chain_persist(sql_repository):
    sql_repository.create(Classification(classification_id="sql-2", description="Stainless steel cooking pot"))
    recorder = DecisionRecorder(sql_repository, "sql-2")
    recorder.log_event("classification_created")
    first = recorder.append(
        GRIStep.PRE_CLASSIFICATION, question="q", answer="a", reasoning="analysed", confidence=0.9
    )
    recorder.append(GRIStep.GRI_1, question="q", answer="7323", reasoning="terms of heading", confidence=0.9)

    decisions = sql_repository.list_decisions("sql-2")
    assert [d.step for d in decisions] == [GRIStep.PRE_CLASSIFICATION, GRIStep.GRI_1]
    assert decisions[0] == first
    assert sql_repository.last_audit_entry("sql-2").sequence == 2
    assert recorder.verify()


def test_duplicate_sequence_rejected(sql_repository):
    sql_repository.create(Classification(classification_id="sql-3", description="Stainless steel cooking pot"))
    recorder = DecisionRecorder(sql_repository, "sql-3")
    entry = recorder.log_event("classification_created")

    with pytest.raises(ValueError):
        sql_repository.append_audit_entry(entry.model_copy(update={"entry_id": "other"}))


def test_tampering_in_database_detected(sql_repository, session_factory):
    sql_repository.create(Classification(classification_id="sql-4", description="Stainless steel cooking pot"))
    recorder = DecisionRecorder(sql_repository, "sql-4")
    recorder.log_event("classification_created", details={"description": "Stainless steel cooking pot"})

    with session_factory() as session:
        record = session.query(AuditEntryRecord).filter_by(classification_id="sql-4").one()
        record.details = {"description": "Plastic cooking pot"}
        session.commit()

    with pytest.raises(AuditIntegrityViolation):
        recorder.verify()


def test_service_on_sql_repository(sql_repository, knowledge_base):
    service = ClassificationService(
        sql_repository,
        knowledge_base,
        settings=ClassificationSettings(max_questions=0),
        notifier=RecordingNotifier(),
    )
    classification = service.start_classification("Men's cotton t-shirt, 100% cotton, knitted")

    stored = sql_repository.get(classification.classification_id)
    assert stored.status == ClassificationStatus.COMPLETED
    assert stored.final_code == "61091000"
    assert service.verify_audit_trail(classification.classification_id)
