"""Application document analysis.

Text extraction and completeness scoring are done by an external analysis
service. Its payloads are stored on the project as returned and served back
unmodified.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import httpx
import structlog
from sqlalchemy.orm import Session

from proposals.access import (
    assigned_reviewer_ids,
    ensure_executor,
    get_project,
    is_executor,
)
from proposals.config import get_settings
from proposals.errors import Forbidden, PreconditionFailed, ServiceUnavailable, ValidationError
from proposals.models import Project, User

logger = structlog.get_logger()

SUPPORTED_MIME_TYPES = (
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/msword",
    "text/plain",
)


class DocumentAnalyzer(Protocol):
    def analyze(self, content: bytes, mime_type: str) -> dict[str, Any]:
        ...

    def score(self, extracted_text: str) -> dict[str, Any]:
        ...


class HttpDocumentAnalyzer:
    """Client for the document analysis service."""

    def __init__(self, base_url: str, timeout_seconds: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.request(method, f"{self.base_url}{path}", **kwargs)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            logger.warning("document_analysis_request_failed", path=path, error=str(exc))
            raise ServiceUnavailable("Document analysis service is unavailable") from exc
        except ValueError as exc:
            logger.warning("document_analysis_invalid_response", path=path, error=str(exc))
            raise ServiceUnavailable("Document analysis service returned an invalid response") from exc
        if not isinstance(payload, dict):
            raise ServiceUnavailable("Document analysis service returned an invalid response")
        return payload

    def analyze(self, content: bytes, mime_type: str) -> dict[str, Any]:
        return self._call(
            "POST",
            "/analyze",
            content=content,
            headers={"Content-Type": mime_type},
        )

    def score(self, extracted_text: str) -> dict[str, Any]:
        return self._call("POST", "/score", json={"extracted_text": extracted_text})


class UnconfiguredAnalyzer:
    """Stands in when no analysis service URL is configured."""

    def analyze(self, content: bytes, mime_type: str) -> dict[str, Any]:
        raise ServiceUnavailable("Document analysis is not configured")

    def score(self, extracted_text: str) -> dict[str, Any]:
        raise ServiceUnavailable("Document analysis is not configured")


def get_analyzer() -> DocumentAnalyzer:
    settings = get_settings()
    if settings.DOCUMENT_ANALYSIS_URL:
        return HttpDocumentAnalyzer(
            settings.DOCUMENT_ANALYSIS_URL, settings.DOCUMENT_ANALYSIS_TIMEOUT_SECONDS
        )
    return UnconfiguredAnalyzer()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def extract_text(
    db: Session,
    project_id: int,
    user: User,
    content: bytes,
    mime_type: str,
    analyzer: DocumentAnalyzer,
) -> Project:
    project = get_project(db, project_id)
    ensure_executor(project, user, "analyze the application document")
    if not content:
        raise ValidationError("Document is empty")
    base_type = (mime_type or "").split(";")[0].strip().lower()
    if base_type not in SUPPORTED_MIME_TYPES:
        raise ValidationError(
            f"Unsupported document type '{base_type or 'unknown'}'",
            meta={"supported": list(SUPPORTED_MIME_TYPES)},
        )

    result = analyzer.analyze(content, base_type)
    text = result.get("extracted_text")
    if not isinstance(text, str):
        raise ServiceUnavailable("Document analysis service returned no text")

    project.extracted_text = text
    project.extracted_text_updated_at = _now()
    db.commit()
    db.refresh(project)
    logger.info("document_text_extracted", project_id=project.id, characters=len(text))
    return project


def check_missing_sections(
    db: Session, project_id: int, user: User, analyzer: DocumentAnalyzer
) -> Project:
    """Score the stored text and keep the completeness report verbatim."""
    project = get_project(db, project_id)
    ensure_executor(project, user, "check the application document")
    if not project.extracted_text:
        raise PreconditionFailed("Extract the document text before checking it")

    report = analyzer.score(project.extracted_text)
    project.missing_sections = report
    project.missing_sections_updated_at = _now()
    db.commit()
    db.refresh(project)
    logger.info(
        "document_sections_checked",
        project_id=project.id,
        completeness_score=report.get("completeness_score"),
    )
    return project


def get_extracted_text(db: Session, project_id: int, user: User) -> dict[str, Any]:
    project = get_project(db, project_id)
    if not (
        user.is_admin
        or is_executor(project, user)
        or user.id in assigned_reviewer_ids(db, project.id)
    ):
        raise Forbidden("You do not have access to this document")
    return {
        "project_id": project.id,
        "extracted_text": project.extracted_text,
        "updated_at": project.extracted_text_updated_at,
    }


def get_missing_sections(db: Session, project_id: int, user: User) -> dict[str, Any]:
    project = get_project(db, project_id)
    if not (
        user.is_admin
        or is_executor(project, user)
        or project.final_approver_user_id == user.id
        or user.id in assigned_reviewer_ids(db, project.id)
    ):
        raise Forbidden("You do not have access to this document")
    return {
        "project_id": project.id,
        "report": project.missing_sections,
        "updated_at": project.missing_sections_updated_at,
    }
