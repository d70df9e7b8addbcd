# app/models/provider.py
"""
Typed result shapes for the verification provider's responses.

Responses are camelCase JSON. Every model keeps unknown fields (extra="allow")
so raw provider data survives into the audit trail, while the fields the
orchestrator relies on are explicit and optional.
"""

import math
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ProviderModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class Identity(ProviderModel):
    id: str
    links: Optional[Dict[str, Any]] = None


class DocumentTypeInfo(ProviderModel):
    type: Optional[str] = None
    issuing_country: Optional[str] = None
    edition: Optional[str] = None


class DocumentPageResult(ProviderModel):
    page_type: Literal["front", "back", "unknown"] = "unknown"
    document_type: Optional[DocumentTypeInfo] = None
    detection: Optional[Dict[str, Any]] = None
    warnings: List[str] = Field(default_factory=list)
    error_code: Optional[str] = None

    @field_validator("page_type", mode="before")
    @classmethod
    def _coerce_page_type(cls, value):
        if isinstance(value, str) and value.lower() in ("front", "back"):
            return value.lower()
        return "unknown"

    @field_validator("warnings", mode="before")
    @classmethod
    def _coerce_warnings(cls, value):
        return value or []


class SelfieUpload(ProviderModel):
    id: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    error_code: Optional[str] = None

    @field_validator("warnings", mode="before")
    @classmethod
    def _coerce_warnings(cls, value):
        return value or []


class FaceDetection(ProviderModel):
    id: str
    detection: Dict[str, Any] = Field(default_factory=dict)


class FaceTemplate(ProviderModel):
    data: str
    version: Optional[str] = None


class FaceSimilarity(ProviderModel):
    score: float


class FaceMaskResult(ProviderModel):
    score: float = 0.0


class FaceMatchBlock(ProviderModel):
    score: Optional[float] = None

    @field_validator("score", mode="before")
    @classmethod
    def _similarity_only(cls, value):
        # anything but a finite similarity in [0, 1] counts as "no score"
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if not math.isfinite(value) or not 0.0 <= value <= 1.0:
            return None
        return value


class SelfieInspection(ProviderModel):
    has_mask: Optional[bool] = None
    face_quality: Optional[str] = None
    similarity_with: Optional[Dict[str, Any]] = None


class IdentityInspection(ProviderModel):
    """Result of inspecting everything submitted for an identity record"""

    face_match: Optional[FaceMatchBlock] = None
    selfie_inspection: Optional[SelfieInspection] = None
    security: Optional[Dict[str, Any]] = None

    @property
    def face_match_score(self) -> Optional[float]:
        if self.face_match is None:
            return None
        return self.face_match.score


class LivenessEvaluation(ProviderModel):
    status: Literal["live", "not_live", "suspicious"] = "not_live"
    confidence: float = 0.0
    is_deepfake: Optional[bool] = None
    deepfake_confidence: Optional[float] = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value):
        if isinstance(value, str) and value.lower() in ("live", "not_live", "suspicious"):
            return value.lower()
        return "not_live"

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value):
        return 0.0 if value is None else value
