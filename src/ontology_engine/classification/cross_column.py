"""
Cross-column analysis

Runs once per table flagged during classification. Numeric columns that may be
money are paired with a sibling ISO-4217 currency column, and suspected soft
delete timestamps are confirmed or reverted to event_time. The model is asked
once per table; without a model the deterministic pairing below is used.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from pydantic import Field, field_validator

from ..config import ClassificationConfig
from ..llm_client.structured import LLMOutput, StructuredModelClient
from ..models.column_features import (
    ColumnDataProfile,
    ColumnFeatures,
    CurrencyUnit,
    MonetaryFeatures,
    PATTERN_ISO4217,
    Role,
    TimestampFeatures,
    TimestampPurpose,
)
from ..utils import get_logger
from .patterns import is_decimal_type, is_integer_type

logger = get_logger(__name__)

PROMPT_SAMPLE_LIMIT = 5
SOFT_DELETE_MIN_NULL_RATE = 0.5


class MonetaryPairingResponse(LLMOutput):
    amount_column: str
    currency_column: str = ""
    currency_unit: str = CurrencyUnit.CENTS.value
    amount_description: str = ""
    confidence: float = 0.0

    @field_validator("currency_unit", mode="before")
    @classmethod
    def _known_unit(cls, value: object) -> str:
        try:
            return CurrencyUnit(str(value).strip().lower()).value
        except ValueError:
            return CurrencyUnit.CENTS.value


class SoftDeleteValidationResponse(LLMOutput):
    column_name: str
    is_soft_delete: bool = False
    non_null_meaning: str = ""
    description: str = ""
    confidence: float = 0.0


class CrossColumnResponse(LLMOutput):
    monetary_pairings: List[MonetaryPairingResponse] = Field(default_factory=list)
    soft_delete_validations: List[SoftDeleteValidationResponse] = Field(default_factory=list)


@dataclass
class MonetaryPairing:
    amount_column: str
    currency_column: str
    currency_unit: str
    amount_description: str = ""
    confidence: float = 0.0


@dataclass
class SoftDeleteValidation:
    column_name: str
    is_soft_delete: bool
    non_null_meaning: str = ""
    description: str = ""
    confidence: float = 0.0


@dataclass
class CrossColumnResult:
    table_name: str
    monetary_pairings: List[MonetaryPairing] = field(default_factory=list)
    soft_delete_validations: List[SoftDeleteValidation] = field(default_factory=list)
    llm_model_used: str = ""


def guess_currency_unit(profile: ColumnDataProfile) -> str:
    """Integer amounts are stored in minor units; decimals in major units"""
    if is_integer_type(profile.data_type):
        return CurrencyUnit.CENTS.value
    if is_decimal_type(profile.data_type):
        return CurrencyUnit.DOLLARS.value
    return CurrencyUnit.CENTS.value


class CrossColumnAnalyzer:
    """Phase 5"""

    SYSTEM_PROMPT = (
        "You are a database schema analyst. Your task is to analyze relationships between "
        "columns in the same table.\n\n"
        "Focus on:\n"
        "1. Monetary pairing: Which numeric columns represent monetary amounts and which "
        "currency column do they pair with?\n"
        "2. Soft delete validation: For high-null-rate timestamp columns, confirm if they are "
        "soft delete markers and what non-NULL values mean.\n\n"
        "Base your analysis on DATA patterns (value distributions, null rates), not column "
        "names. Respond with valid JSON only."
    )

    def __init__(self, config: Optional[ClassificationConfig] = None):
        self.config = config or ClassificationConfig()

    def currency_columns(self, table_profiles: Sequence[ColumnDataProfile]) -> List[ColumnDataProfile]:
        return [
            p for p in table_profiles
            if p.matches_pattern(PATTERN_ISO4217, self.config.currency_pattern_threshold)
        ]

    def analyze(self, table_name: str,
                table_profiles: Sequence[ColumnDataProfile],
                features_by_column: Dict[str, ColumnFeatures],
                client: Optional[StructuredModelClient] = None) -> CrossColumnResult:
        monetary: List[ColumnDataProfile] = []
        soft_deletes: List[ColumnDataProfile] = []
        for profile in table_profiles:
            features = features_by_column.get(profile.column_id)
            if features is None or not features.needs_cross_column_check:
                continue
            if features.monetary_features is not None:
                monetary.append(profile)
            timestamp = features.timestamp_features
            if timestamp is not None and timestamp.is_soft_delete:
                soft_deletes.append(profile)

        if not monetary and not soft_deletes:
            return CrossColumnResult(table_name=table_name)

        currencies = self.currency_columns(table_profiles)
        if client is None:
            return self._deterministic(table_name, monetary, soft_deletes, currencies)

        prompt = self.build_prompt(table_name, table_profiles, monetary, soft_deletes, currencies)
        result = client.classify(
            prompt, CrossColumnResponse,
            system_prompt=self.SYSTEM_PROMPT, purpose="cross_column_analysis",
        )
        return self._from_response(table_name, result.data, result.model, monetary, soft_deletes)

    def _deterministic(self, table_name: str,
                       monetary: Sequence[ColumnDataProfile],
                       soft_deletes: Sequence[ColumnDataProfile],
                       currencies: Sequence[ColumnDataProfile]) -> CrossColumnResult:
        result = CrossColumnResult(table_name=table_name)
        # Pairing needs a currency sibling; a lone numeric is left unconfirmed
        if len(currencies) == 1:
            currency = currencies[0]
            for profile in monetary:
                result.monetary_pairings.append(MonetaryPairing(
                    amount_column=profile.column_name,
                    currency_column=currency.column_name,
                    currency_unit=guess_currency_unit(profile),
                    confidence=currency.pattern_rate(PATTERN_ISO4217),
                ))
        for profile in soft_deletes:
            confirmed = profile.null_rate >= SOFT_DELETE_MIN_NULL_RATE
            result.soft_delete_validations.append(SoftDeleteValidation(
                column_name=profile.column_name,
                is_soft_delete=confirmed,
                non_null_meaning="Record was soft-deleted at this timestamp" if confirmed else "",
                confidence=0.6,
            ))
        return result

    def build_prompt(self, table_name: str,
                     all_profiles: Sequence[ColumnDataProfile],
                     monetary: Sequence[ColumnDataProfile],
                     soft_deletes: Sequence[ColumnDataProfile],
                     currencies: Sequence[ColumnDataProfile]) -> str:
        lines = [
            "# Cross-Column Analysis",
            "",
            f"TABLE: {table_name}",
            "",
            "ALL COLUMNS:",
        ]
        for p in all_profiles:
            lines.append(
                f"- {p.column_name} ({p.data_type}): null rate {p.null_rate:.1%}, "
                f"{p.distinct_count} distinct"
            )

        if monetary:
            lines.extend(["", "POSSIBLE MONETARY AMOUNTS:"])
            for p in monetary:
                samples = ", ".join(p.sample_values[:PROMPT_SAMPLE_LIMIT])
                lines.append(f"- {p.column_name} ({p.data_type}): {samples}")
            if currencies:
                lines.extend(["", "POSSIBLE CURRENCY COLUMNS:"])
                for p in currencies:
                    samples = ", ".join(p.sample_values[:PROMPT_SAMPLE_LIMIT])
                    lines.append(f"- {p.column_name} ({p.data_type}): {samples}")
            lines.extend([
                "",
                "For each amount: is it money (not a percentage, count or ID), which currency "
                "column does it pair with, and is it in cents, dollars or basis_points?",
            ])

        if soft_deletes:
            lines.extend(["", "POSSIBLE SOFT DELETE TIMESTAMPS:"])
            for p in soft_deletes:
                samples = ", ".join(p.sample_values[:3])
                lines.append(f"- {p.column_name} ({p.data_type}): null rate {p.null_rate:.1%}; {samples}")
            lines.extend([
                "",
                "For each timestamp: is it truly a soft delete marker, and what does a non-NULL value indicate?",
            ])

        lines.extend([
            "",
            "Respond with JSON in exactly this shape:",
            '{"monetary_pairings": [{"amount_column": "total_amount", "currency_column": "currency_code", '
            '"currency_unit": "cents", "amount_description": "Order total", "confidence": 0.9}], '
            '"soft_delete_validations": [{"column_name": "deleted_at", "is_soft_delete": true, '
            '"non_null_meaning": "Record was soft-deleted", "description": "Soft delete marker", "confidence": 0.95}]}',
        ])
        return "\n".join(lines)

    def _from_response(self, table_name: str, response: CrossColumnResponse, model: str,
                       monetary: Sequence[ColumnDataProfile],
                       soft_deletes: Sequence[ColumnDataProfile]) -> CrossColumnResult:
        monetary_names = {p.column_name for p in monetary}
        soft_delete_names = {p.column_name for p in soft_deletes}
        result = CrossColumnResult(table_name=table_name, llm_model_used=model)

        for pairing in response.monetary_pairings:
            if pairing.amount_column not in monetary_names:
                logger.warning(
                    "Monetary pairing references unknown column",
                    extra={"extra_fields": {"table": table_name, "column": pairing.amount_column}}
                )
                continue
            result.monetary_pairings.append(MonetaryPairing(
                amount_column=pairing.amount_column,
                currency_column=pairing.currency_column,
                currency_unit=pairing.currency_unit,
                amount_description=pairing.amount_description,
                confidence=pairing.confidence,
            ))

        for validation in response.soft_delete_validations:
            if validation.column_name not in soft_delete_names:
                logger.warning(
                    "Soft delete validation references unknown column",
                    extra={"extra_fields": {"table": table_name, "column": validation.column_name}}
                )
                continue
            result.soft_delete_validations.append(SoftDeleteValidation(
                column_name=validation.column_name,
                is_soft_delete=validation.is_soft_delete,
                non_null_meaning=validation.non_null_meaning,
                description=validation.description,
                confidence=validation.confidence,
            ))
        return result


def merge_cross_column(features_by_name: Dict[str, ColumnFeatures], result: CrossColumnResult) -> int:
    """Fold a Phase 5 result into the table's features; returns how many columns changed"""
    merged = 0
    for pairing in result.monetary_pairings:
        features = features_by_name.get(pairing.amount_column)
        if features is None:
            continue
        monetary = features.monetary_features or MonetaryFeatures()
        monetary.is_monetary = True
        monetary.currency_unit = pairing.currency_unit
        monetary.paired_currency_column = pairing.currency_column
        monetary.amount_description = pairing.amount_description
        features.set_path_features(monetary)
        features.semantic_type = "monetary"
        features.role = Role.MEASURE.value
        if pairing.amount_description and not features.description:
            features.description = pairing.amount_description
        if pairing.confidence > features.confidence:
            features.confidence = pairing.confidence
        features.needs_cross_column_check = False
        merged += 1
        logger.debug(
            "Merged monetary pairing",
            extra={"extra_fields": {
                "table": result.table_name,
                "amount_column": pairing.amount_column,
                "currency_column": pairing.currency_column,
                "unit": pairing.currency_unit,
            }}
        )

    for validation in result.soft_delete_validations:
        features = features_by_name.get(validation.column_name)
        if features is None:
            continue
        timestamp = features.timestamp_features or TimestampFeatures()
        timestamp.is_soft_delete = validation.is_soft_delete
        if validation.is_soft_delete:
            timestamp.timestamp_purpose = TimestampPurpose.SOFT_DELETE
            features.semantic_type = TimestampPurpose.SOFT_DELETE.value
        else:
            if timestamp.timestamp_purpose == TimestampPurpose.SOFT_DELETE:
                timestamp.timestamp_purpose = TimestampPurpose.EVENT_TIME
            if features.semantic_type == TimestampPurpose.SOFT_DELETE.value:
                features.semantic_type = TimestampPurpose.EVENT_TIME.value
        features.set_path_features(timestamp)
        if validation.description:
            features.description = validation.description
        if validation.confidence > features.confidence:
            features.confidence = validation.confidence
        features.needs_cross_column_check = False
        merged += 1

    return merged
