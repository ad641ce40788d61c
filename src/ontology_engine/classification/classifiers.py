"""
Path-specific column classifiers

Each classification path has one classifier holding its system prompt, prompt
builder, response schema and response parser. Every column gets one focused
model request. Boolean and JSON columns fall back to a deterministic result when
no model is available; unknown columns never call the model.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Type

from pydantic import Field, field_validator

from ..llm_client.structured import FlexibleEnumValue, LLMOutput, StructuredModelClient
from ..models.column_features import (
    BooleanFeatures,
    BooleanType,
    ClassificationPath,
    ColumnDataProfile,
    ColumnFeatures,
    EnumFeatures,
    IdentifierFeatures,
    IdentifierType,
    MonetaryFeatures,
    Purpose,
    Role,
    TimestampFeatures,
    TimestampPurpose,
)
from ..models.relationship import clamp_confidence
from ..utils import LLMError, OntologyMetrics, get_logger
from .patterns import TIMESTAMP_SCALES

logger = get_logger(__name__)

PROMPT_SAMPLE_LIMIT = 20

_MEASURE_NUMERIC_TYPES = ("measure", "monetary", "percentage", "count")


def _coerce_enum(value: object, enum_cls, default):
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


# Model response schemas

class ClassificationResponse(LLMOutput):
    """Fields every classification response may carry"""
    needs_clarification: bool = False
    clarification_question: str = ""


class TimestampResponse(ClassificationResponse):
    purpose: str = TimestampPurpose.EVENT_TIME.value
    is_soft_delete: bool = False
    is_audit_field: bool = False
    confidence: float = 0.5
    description: str = ""

    @field_validator("purpose", mode="before")
    @classmethod
    def _known_purpose(cls, value: object) -> str:
        return _coerce_enum(value, TimestampPurpose, TimestampPurpose.EVENT_TIME).value


class BooleanResponse(ClassificationResponse):
    true_meaning: str = ""
    false_meaning: str = ""
    boolean_type: str = BooleanType.STATE.value
    confidence: float = 0.5
    description: str = ""

    @field_validator("boolean_type", mode="before")
    @classmethod
    def _known_type(cls, value: object) -> str:
        return _coerce_enum(value, BooleanType, BooleanType.STATE).value


class EnumResponse(ClassificationResponse):
    is_state_machine: bool = False
    state_description: str = ""
    needs_detailed_analysis: bool = False
    values: List[FlexibleEnumValue] = Field(default_factory=list)
    confidence: float = 0.5
    description: str = ""


class UUIDResponse(ClassificationResponse):
    identifier_type: str = IdentifierType.INTERNAL_UUID.value
    entity_referenced: str = ""
    needs_fk_resolution: bool = False
    confidence: float = 0.5
    description: str = ""

    @field_validator("identifier_type", mode="before")
    @classmethod
    def _known_type(cls, value: object) -> str:
        return _coerce_enum(value, IdentifierType, IdentifierType.INTERNAL_UUID).value


class ExternalIDResponse(ClassificationResponse):
    external_service: str = ""
    entity_referenced: str = ""
    confidence: float = 0.5
    description: str = ""


class NumericResponse(ClassificationResponse):
    numeric_type: str = "measure"
    may_be_monetary: bool = False
    entity_referenced: str = ""
    confidence: float = 0.5
    description: str = ""


class TextResponse(ClassificationResponse):
    text_type: str = "text"
    confidence: float = 0.5
    description: str = ""


class JSONResponse(ClassificationResponse):
    json_type: str = "json"
    confidence: float = 0.5
    description: str = ""


def profile_context(profile: ColumnDataProfile) -> str:
    """Statistics block shared by every classification prompt"""
    parts = [
        f"TABLE: {profile.table_name}",
        f"COLUMN: {profile.column_name}",
        f"DATA TYPE: {profile.data_type}",
        f"PRIMARY KEY: {'yes' if profile.is_primary_key else 'no'}",
        f"UNIQUE: {'yes' if profile.is_unique else 'no'}",
        f"ROW COUNT: {profile.row_count}",
        f"DISTINCT VALUES: {profile.distinct_count}",
        f"NULL RATE: {profile.null_rate:.1%}",
    ]
    if profile.min_value is not None or profile.max_value is not None:
        parts.append(f"RANGE: {profile.min_value} .. {profile.max_value} (avg {profile.avg_value})")
    if profile.min_length is not None:
        parts.append(f"LENGTH: {profile.min_length} .. {profile.max_length}")
    if profile.sample_values:
        parts.append("SAMPLE VALUES:")
        parts.extend(f"- {v}" for v in profile.sample_values[:PROMPT_SAMPLE_LIMIT])
    if profile.detected_patterns:
        parts.append("DETECTED PATTERNS:")
        parts.extend(
            f"- {p.pattern_name}: {p.match_rate:.0%} of samples"
            for p in profile.detected_patterns
        )
    return "\n".join(parts)


class ColumnClassifier(ABC):
    """Base for path-specific classifiers"""

    path: ClassificationPath = ClassificationPath.UNKNOWN
    response_model: Type[LLMOutput] = LLMOutput

    SYSTEM_PROMPT = (
        "You are a database analyst classifying the business meaning of a single column. "
        "Base your answer on the DATA (value distributions, patterns, null rates). "
        "Column names are context only. If the data cannot settle the meaning, add "
        '"needs_clarification": true and a "clarification_question" for a domain expert. '
        "Respond with valid JSON only."
    )

    QUESTION = ""
    RESPONSE_FORMAT = ""

    def build_prompt(self, profile: ColumnDataProfile) -> str:
        return "\n".join([
            profile_context(profile),
            "",
            self.QUESTION,
            "",
            "Respond with JSON in exactly this shape:",
            self.RESPONSE_FORMAT,
        ])

    def classify(self, profile: ColumnDataProfile,
                 client: Optional[StructuredModelClient],
                 clarification_threshold: float = 0.0) -> ColumnFeatures:
        """
        Classify one column. Model answers below ``clarification_threshold``, or
        that ask for clarification themselves, are flagged for a question.
        """
        if client is None:
            features = self.fallback(profile)
            features.confidence = clamp_confidence(features.confidence)
        else:
            result = client.classify(
                self.build_prompt(profile),
                self.response_model,
                system_prompt=self.SYSTEM_PROMPT,
                purpose=f"classify_{self.path.value}",
            )
            features = self.parse(profile, result.data, result.model)
            features.confidence = clamp_confidence(features.confidence)
            self.flag_clarification(profile, features, result.data, clarification_threshold)
        OntologyMetrics.record_classification(self.path.value)
        return features

    def flag_clarification(self, profile: ColumnDataProfile, features: ColumnFeatures,
                           response: LLMOutput, threshold: float) -> None:
        asked = (getattr(response, "clarification_question", "") or "").strip()
        if getattr(response, "needs_clarification", False):
            features.needs_clarification = True
            features.clarification_question = asked or self.default_clarification(profile, features)
        elif features.confidence < threshold:
            features.needs_clarification = True
            features.clarification_question = self.default_clarification(profile, features)

    def default_clarification(self, profile: ColumnDataProfile, features: ColumnFeatures) -> str:
        return (
            f"What does {profile.qualified_name} represent? It was classified as "
            f"{self.path.value} with only {features.confidence:.0%} confidence."
        )

    @abstractmethod
    def parse(self, profile: ColumnDataProfile, response: LLMOutput, model: str) -> ColumnFeatures:
        pass

    def fallback(self, profile: ColumnDataProfile) -> ColumnFeatures:
        raise LLMError(
            message=f"no model available to classify {profile.qualified_name} ({self.path.value})",
            recoverable=False,
        )

    def _features(self, profile: ColumnDataProfile, **kwargs) -> ColumnFeatures:
        return ColumnFeatures(
            column_id=profile.column_id,
            classification_path=self.path,
            table_name=profile.table_name,
            column_name=profile.column_name,
            **kwargs,
        )


class TimestampClassifier(ColumnClassifier):
    path = ClassificationPath.TIMESTAMP
    response_model = TimestampResponse

    QUESTION = (
        "What does this timestamp record? Choose one purpose: audit_created, audit_updated, "
        "soft_delete, event_time, scheduled_time, expiration, cursor. A soft delete column is "
        "mostly NULL and is set when a row is logically deleted."
    )
    RESPONSE_FORMAT = (
        '{"purpose": "audit_created", "is_soft_delete": false, "is_audit_field": true, '
        '"confidence": 0.85, "description": "When the record was created"}'
    )

    def parse(self, profile: ColumnDataProfile, response: TimestampResponse, model: str) -> ColumnFeatures:
        scale = ""
        for pattern in profile.detected_patterns:
            scale = TIMESTAMP_SCALES.get(pattern.pattern_name, scale)
        features = self._features(
            profile,
            purpose=Purpose.TIMESTAMP.value,
            semantic_type=response.purpose,
            role=Role.ATTRIBUTE.value,
            description=response.description,
            confidence=response.confidence,
            llm_model_used=model,
            needs_cross_column_check=response.is_soft_delete,
        )
        features.set_path_features(TimestampFeatures(
            timestamp_purpose=TimestampPurpose(response.purpose),
            timestamp_scale=scale,
            is_soft_delete=response.is_soft_delete,
            is_audit_field=response.is_audit_field,
        ))
        return features


class BooleanClassifier(ColumnClassifier):
    path = ClassificationPath.BOOLEAN
    response_model = BooleanResponse

    QUESTION = (
        "This column holds two values. What does each value mean, and what kind of flag is it? "
        "boolean_type is one of: feature_flag, status_indicator, permission, preference, state."
    )
    RESPONSE_FORMAT = (
        '{"true_meaning": "Account is active", "false_meaning": "Account is disabled", '
        '"boolean_type": "status_indicator", "confidence": 0.9, "description": "Whether the account is active"}'
    )

    def parse(self, profile: ColumnDataProfile, response: BooleanResponse, model: str) -> ColumnFeatures:
        features = self._features(
            profile,
            purpose=Purpose.FLAG.value,
            semantic_type=response.boolean_type,
            role=Role.ATTRIBUTE.value,
            description=response.description,
            confidence=response.confidence,
            llm_model_used=model,
        )
        features.set_path_features(BooleanFeatures(
            true_meaning=response.true_meaning,
            false_meaning=response.false_meaning,
            boolean_type=BooleanType(response.boolean_type),
        ))
        return features

    def fallback(self, profile: ColumnDataProfile) -> ColumnFeatures:
        label = profile.column_name.replace("_", " ")
        features = self._features(
            profile,
            purpose=Purpose.FLAG.value,
            semantic_type=BooleanType.STATE.value,
            role=Role.ATTRIBUTE.value,
            description=f"Flag indicating {label}",
            confidence=0.6,
        )
        features.set_path_features(BooleanFeatures(
            true_meaning=label,
            false_meaning=f"not {label}",
        ))
        return features


class EnumClassifier(ColumnClassifier):
    path = ClassificationPath.ENUM
    response_model = EnumResponse

    QUESTION = (
        "This column has a small fixed set of values. Is it a state machine (values describe "
        "lifecycle stages a row moves through)? Should each value be analyzed in detail?"
    )
    RESPONSE_FORMAT = (
        '{"is_state_machine": true, "state_description": "Order lifecycle", '
        '"needs_detailed_analysis": true, "confidence": 0.85, "description": "Current order status"}'
    )

    def parse(self, profile: ColumnDataProfile, response: EnumResponse, model: str) -> ColumnFeatures:
        features = self._features(
            profile,
            purpose=Purpose.ENUM.value,
            semantic_type="enum",
            role=Role.ATTRIBUTE.value,
            description=response.description,
            confidence=response.confidence,
            llm_model_used=model,
            needs_enum_analysis=response.needs_detailed_analysis or response.is_state_machine,
        )
        features.set_path_features(EnumFeatures(
            is_state_machine=response.is_state_machine,
            state_description=response.state_description,
        ))
        return features

    def fallback(self, profile: ColumnDataProfile) -> ColumnFeatures:
        # Value analysis is data-driven, so it still runs without a model
        features = self._features(
            profile,
            purpose=Purpose.ENUM.value,
            semantic_type="enum",
            role=Role.ATTRIBUTE.value,
            description=f"Enumerated values of {profile.column_name}",
            confidence=0.5,
            needs_enum_analysis=True,
        )
        features.set_path_features(EnumFeatures())
        return features


class UUIDClassifier(ColumnClassifier):
    path = ClassificationPath.UUID
    response_model = UUIDResponse

    QUESTION = (
        "This column holds UUIDs. Is it the row's own identifier or a reference to another "
        "entity? identifier_type is one of: internal_uuid, external_uuid, primary_key, foreign_key."
    )
    RESPONSE_FORMAT = (
        '{"identifier_type": "foreign_key", "entity_referenced": "user", '
        '"needs_fk_resolution": true, "confidence": 0.8, "description": "The user who placed the order"}'
    )

    def parse(self, profile: ColumnDataProfile, response: UUIDResponse, model: str) -> ColumnFeatures:
        identifier_type = IdentifierType(response.identifier_type)
        role = Role.ATTRIBUTE
        if profile.is_primary_key or identifier_type == IdentifierType.PRIMARY_KEY:
            role = Role.PRIMARY_KEY
        elif identifier_type == IdentifierType.FOREIGN_KEY:
            role = Role.FOREIGN_KEY
        features = self._features(
            profile,
            purpose=Purpose.IDENTIFIER.value,
            semantic_type=identifier_type.value,
            role=role.value,
            description=response.description,
            confidence=response.confidence,
            llm_model_used=model,
            needs_fk_resolution=response.needs_fk_resolution and identifier_type == IdentifierType.FOREIGN_KEY,
        )
        features.set_path_features(IdentifierFeatures(
            identifier_type=identifier_type,
            entity_referenced=response.entity_referenced,
        ))
        return features


class ExternalIDClassifier(ColumnClassifier):
    path = ClassificationPath.EXTERNAL_ID
    response_model = ExternalIDResponse

    QUESTION = "These values are identifiers issued by an external service. Which service, and what do they identify?"
    RESPONSE_FORMAT = (
        '{"external_service": "stripe", "entity_referenced": "payment_intent", '
        '"confidence": 0.95, "description": "Stripe payment intent for the charge"}'
    )

    def parse(self, profile: ColumnDataProfile, response: ExternalIDResponse, model: str) -> ColumnFeatures:
        features = self._features(
            profile,
            purpose=Purpose.IDENTIFIER.value,
            semantic_type=IdentifierType.EXTERNAL_SERVICE_ID.value,
            role=Role.ATTRIBUTE.value,
            description=response.description,
            confidence=response.confidence,
            llm_model_used=model,
        )
        features.set_path_features(IdentifierFeatures(
            identifier_type=IdentifierType.EXTERNAL_SERVICE_ID,
            external_service=response.external_service,
            entity_referenced=response.entity_referenced,
        ))
        return features


class NumericClassifier(ColumnClassifier):
    path = ClassificationPath.NUMERIC
    response_model = NumericResponse

    QUESTION = (
        "What does this number represent? numeric_type is one of: identifier, measure, monetary, "
        "percentage, count, score, other. Set may_be_monetary when it could be an amount of money."
    )
    RESPONSE_FORMAT = (
        '{"numeric_type": "monetary", "may_be_monetary": true, "entity_referenced": "", '
        '"confidence": 0.75, "description": "Order total"}'
    )

    def parse(self, profile: ColumnDataProfile, response: NumericResponse, model: str) -> ColumnFeatures:
        numeric_type = response.numeric_type.strip().lower()
        purpose = Purpose.MEASURE
        role = Role.ATTRIBUTE
        identifier: Optional[IdentifierFeatures] = None
        needs_fk = False

        if profile.is_primary_key:
            purpose, role = Purpose.IDENTIFIER, Role.PRIMARY_KEY
            identifier = IdentifierFeatures(identifier_type=IdentifierType.PRIMARY_KEY)
        elif numeric_type == "identifier":
            # A non-key integer identifier references another table
            purpose, role = Purpose.IDENTIFIER, Role.FOREIGN_KEY
            identifier = IdentifierFeatures(
                identifier_type=IdentifierType.FOREIGN_KEY,
                entity_referenced=response.entity_referenced,
            )
            needs_fk = True
        elif numeric_type in _MEASURE_NUMERIC_TYPES:
            role = Role.MEASURE

        features = self._features(
            profile,
            purpose=purpose.value,
            semantic_type=numeric_type,
            role=role.value,
            description=response.description,
            confidence=response.confidence,
            llm_model_used=model,
            needs_fk_resolution=needs_fk,
        )
        if identifier is not None:
            features.set_path_features(identifier)
        elif response.may_be_monetary:
            features.needs_cross_column_check = True
            # Confirmed or dropped during cross-column analysis
            features.set_path_features(MonetaryFeatures(is_monetary=False))
        return features


class TextClassifier(ColumnClassifier):
    path = ClassificationPath.TEXT
    response_model = TextResponse

    QUESTION = (
        "What kind of text is this? text_type examples: name, email, url, address, phone, "
        "description, code, free_text."
    )
    RESPONSE_FORMAT = '{"text_type": "email", "confidence": 0.95, "description": "Customer email address"}'

    def parse(self, profile: ColumnDataProfile, response: TextResponse, model: str) -> ColumnFeatures:
        return self._features(
            profile,
            purpose=Purpose.TEXT.value,
            semantic_type=response.text_type,
            role=Role.ATTRIBUTE.value,
            description=response.description,
            confidence=response.confidence,
            llm_model_used=model,
        )


class JSONClassifier(ColumnClassifier):
    path = ClassificationPath.JSON
    response_model = JSONResponse

    QUESTION = "What structure does this JSON hold? json_type examples: settings, metadata, event_payload, address, list."
    RESPONSE_FORMAT = '{"json_type": "metadata", "confidence": 0.85, "description": "Free-form metadata"}'

    def parse(self, profile: ColumnDataProfile, response: JSONResponse, model: str) -> ColumnFeatures:
        return self._features(
            profile,
            purpose=Purpose.JSON.value,
            semantic_type=response.json_type,
            role=Role.ATTRIBUTE.value,
            description=response.description,
            confidence=response.confidence,
            llm_model_used=model,
        )

    def fallback(self, profile: ColumnDataProfile) -> ColumnFeatures:
        return self._features(
            profile,
            purpose=Purpose.JSON.value,
            semantic_type="json",
            role=Role.ATTRIBUTE.value,
            description=f"Structured JSON data in {profile.column_name}",
            confidence=0.5,
        )


class UnknownClassifier(ColumnClassifier):
    """Columns with an unrecognized type are described without a model call"""
    path = ClassificationPath.UNKNOWN

    def classify(self, profile: ColumnDataProfile,
                 client: Optional[StructuredModelClient],
                 clarification_threshold: float = 0.0) -> ColumnFeatures:
        OntologyMetrics.record_classification(self.path.value)
        return self.fallback(profile)

    def parse(self, profile: ColumnDataProfile, response: LLMOutput, model: str) -> ColumnFeatures:
        return self.fallback(profile)

    def fallback(self, profile: ColumnDataProfile) -> ColumnFeatures:
        return self._features(
            profile,
            purpose=Purpose.TEXT.value,
            semantic_type="unknown",
            role=Role.ATTRIBUTE.value,
            description=f"Column with unrecognized data type: {profile.data_type}",
            confidence=0.5,
        )


_CLASSIFIER_TYPES: Dict[ClassificationPath, Type[ColumnClassifier]] = {
    ClassificationPath.TIMESTAMP: TimestampClassifier,
    ClassificationPath.BOOLEAN: BooleanClassifier,
    ClassificationPath.ENUM: EnumClassifier,
    ClassificationPath.UUID: UUIDClassifier,
    ClassificationPath.EXTERNAL_ID: ExternalIDClassifier,
    ClassificationPath.NUMERIC: NumericClassifier,
    ClassificationPath.TEXT: TextClassifier,
    ClassificationPath.JSON: JSONClassifier,
    ClassificationPath.UNKNOWN: UnknownClassifier,
}


class ClassifierRegistry:
    """One cached classifier instance per path"""

    def __init__(self):
        self._classifiers: Dict[ClassificationPath, ColumnClassifier] = {}
        self._lock = threading.Lock()

    def get(self, path: ClassificationPath) -> ColumnClassifier:
        with self._lock:
            if path not in self._classifiers:
                self._classifiers[path] = _CLASSIFIER_TYPES.get(path, UnknownClassifier)()
            return self._classifiers[path]
