from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from hsclassify.api.security import require_api_key
from hsclassify.classification.legal_record import LegalRecord
from hsclassify.classification.models import (
    AuditEntry,
    Classification,
    ClassificationProgress,
    ClarificationQuestion,
    Decision,
    format_code,
    normalize_code,
)
from hsclassify.classification.service import ClassificationService
from hsclassify.observability import redact_api_key

router = APIRouter(
    prefix="/v1",
    tags=["classification"],
    dependencies=[Depends(require_api_key)],
)


def get_service(request: Request) -> ClassificationService:
    return request.app.state.service


def _actor(api_key: str) -> str:
    return f"api:{redact_api_key(api_key)}"


class ClassificationCreateRequest(BaseModel):
    description: str = Field(min_length=1)
    context: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="forbid")


class ClassificationResponse(BaseModel):
    classification: Classification
    question: Optional[ClarificationQuestion] = None
    completed: bool

    model_config = ConfigDict(extra="forbid")


class AnswerRequest(BaseModel):
    step_id: str
    answer: str = Field(min_length=1)

    model_config = ConfigDict(extra="forbid")


class ArchiveRequest(BaseModel):
    reason: str = ""

    model_config = ConfigDict(extra="forbid")


class CorrectionRequest(BaseModel):
    answer: str = Field(min_length=1)
    reasoning: str = Field(min_length=1)
    final_code: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class VerifyResponse(BaseModel):
    classification_id: str
    verified: bool
    entries: int

    model_config = ConfigDict(extra="forbid")


class CheckDigitResponse(BaseModel):
    code: str
    display_code: str
    check_digit: str
    declared_check_digit: Optional[str] = None
    matches_declared: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")


def _response(service: ClassificationService, classification: Classification) -> ClassificationResponse:
    return ClassificationResponse(
        classification=classification,
        question=service.pending_question(classification.classification_id),
        completed=classification.is_terminal,
    )


@router.post("/classifications", response_model=ClassificationResponse, status_code=201)
def create_classification(
    request: ClassificationCreateRequest,
    service: ClassificationService = Depends(get_service),
    api_key: str = Depends(require_api_key),
) -> ClassificationResponse:
    classification = service.start_classification(request.description, request.context, actor=_actor(api_key))
    return _response(service, classification)


@router.get("/classifications/{classification_id}", response_model=ClassificationResponse)
def get_classification(
    classification_id: str, service: ClassificationService = Depends(get_service)
) -> ClassificationResponse:
    return _response(service, service.get_classification(classification_id))


@router.post("/classifications/{classification_id}/answers", response_model=ClassificationProgress)
def submit_answer(
    classification_id: str,
    request: AnswerRequest,
    service: ClassificationService = Depends(get_service),
    api_key: str = Depends(require_api_key),
) -> ClassificationProgress:
    return service.submit_answer(classification_id, request.step_id, request.answer, actor=_actor(api_key))


@router.post("/classifications/{classification_id}/resume", response_model=ClassificationProgress)
def resume_classification(
    classification_id: str,
    service: ClassificationService = Depends(get_service),
    api_key: str = Depends(require_api_key),
) -> ClassificationProgress:
    return service.resume_classification(classification_id, actor=_actor(api_key))


@router.get("/classifications/{classification_id}/decisions", response_model=List[Decision])
def list_decisions(classification_id: str, service: ClassificationService = Depends(get_service)) -> List[Decision]:
    return service.get_decisions(classification_id)


@router.post(
    "/classifications/{classification_id}/decisions/{decision_id}/corrections",
    response_model=Decision,
    status_code=201,
)
def correct_decision(
    classification_id: str,
    decision_id: str,
    request: CorrectionRequest,
    service: ClassificationService = Depends(get_service),
    api_key: str = Depends(require_api_key),
) -> Decision:
    return service.correct_decision(
        classification_id,
        decision_id,
        answer=request.answer,
        reasoning=request.reasoning,
        actor=_actor(api_key),
        final_code=request.final_code,
    )


@router.get("/classifications/{classification_id}/audit", response_model=List[AuditEntry])
def get_audit_trail(classification_id: str, service: ClassificationService = Depends(get_service)) -> List[AuditEntry]:
    return service.get_audit_trail(classification_id)


@router.get("/classifications/{classification_id}/audit/verify", response_model=VerifyResponse)
def verify_audit_trail(classification_id: str, service: ClassificationService = Depends(get_service)) -> VerifyResponse:
    verified = service.verify_audit_trail(classification_id)
    return VerifyResponse(
        classification_id=classification_id,
        verified=verified,
        entries=len(service.get_audit_trail(classification_id)),
    )


@router.post("/classifications/{classification_id}/archive", response_model=Classification)
def archive_classification(
    classification_id: str,
    request: ArchiveRequest | None = None,
    service: ClassificationService = Depends(get_service),
    api_key: str = Depends(require_api_key),
) -> Classification:
    reason = request.reason if request else ""
    return service.archive_classification(classification_id, actor=_actor(api_key), reason=reason)


@router.get("/classifications/{classification_id}/legal-record", response_model=LegalRecord)
def export_legal_record(classification_id: str, service: ClassificationService = Depends(get_service)) -> LegalRecord:
    return service.export_legal_record(classification_id)


@router.get("/codes/{code}/check-digit", response_model=CheckDigitResponse)
def check_digit(code: str, service: ClassificationService = Depends(get_service)) -> CheckDigitResponse:
    digits = normalize_code(code)
    computed = service.knowledge_base.validate_check_digit(digits)
    entry = service.knowledge_base.get_entry(digits)
    declared = entry.check_digit if entry else None
    return CheckDigitResponse(
        code=digits,
        display_code=format_code(digits),
        check_digit=computed,
        declared_check_digit=declared,
        matches_declared=(declared == computed) if declared is not None else None,
    )
