"""
Naming Convention Analysis

Scores how strongly a column name points at a table, based on common foreign key
naming patterns:
- user_id -> users.id
- fk_user -> users.id
- user_fk -> users.id
- id_user -> users.id
- primary_user_id -> users.id (compound patterns)
- user_ref -> users.id
"""
from __future__ import annotations

import re
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Tuple

# (pattern, stem extractor); stems are matched against table names in singular and plural form
FK_PATTERNS: List[Tuple[Pattern[str], Callable[[re.Match], str]]] = [
    (re.compile(r"^(\w+)_id$"), lambda m: m.group(1)),
    (re.compile(r"^fk_(\w+)$"), lambda m: m.group(1)),
    (re.compile(r"^(\w+)_fk$"), lambda m: m.group(1)),
    (re.compile(r"^id_(\w+)$"), lambda m: m.group(1)),
    (re.compile(r"^(\w+)_ref$"), lambda m: m.group(1)),
    (re.compile(r"^(\w+)id$"), lambda m: m.group(1)),
]

IRREGULAR_PLURALS: Dict[str, str] = {
    "person": "people",
    "child": "children",
    "man": "men",
    "woman": "women",
    "mouse": "mice",
    "goose": "geese",
    "category": "categories",
    "company": "companies",
    "country": "countries",
    "city": "cities",
    "status": "statuses",
    "address": "addresses",
    "process": "processes",
    "class": "classes",
    "analysis": "analyses",
    "criterion": "criteria",
    "datum": "data",
    "index": "indices",
}

_IRREGULAR_SINGULARS = {plural: singular for singular, plural in IRREGULAR_PLURALS.items()}

# Scores for the strength of a name match
EXACT_MATCH = 1.0
IRREGULAR_MATCH = 0.95
PLURAL_MATCH = 0.9
COMPOUND_MATCH = 0.7


def pluralize(word: str) -> str:
    """Simple pluralization with the irregular table first"""
    lowered = word.lower()
    if lowered in IRREGULAR_PLURALS:
        return IRREGULAR_PLURALS[lowered]
    if lowered.endswith("y") and len(lowered) > 1 and lowered[-2] not in "aeiou":
        return lowered[:-1] + "ies"
    if lowered.endswith(("s", "x", "z", "ch", "sh")):
        return lowered + "es"
    return lowered + "s"


def singularize(word: str) -> str:
    """Simple singularization (reverse of common plural rules)"""
    lowered = word.lower()
    if lowered in _IRREGULAR_SINGULARS:
        return _IRREGULAR_SINGULARS[lowered]
    if lowered.endswith("ies") and len(lowered) > 3:
        return lowered[:-3] + "y"
    if lowered.endswith(("ses", "xes", "zes", "ches", "shes")) and len(lowered) > 4:
        return lowered[:-2]
    if lowered.endswith("s") and not lowered.endswith("ss"):
        return lowered[:-1]
    return lowered


def entity_name_for_table(table_name: str) -> str:
    """Singular entity name for a table: "order_items" -> "order_item" """
    parts = table_name.lower().split("_")
    parts[-1] = singularize(parts[-1])
    return "_".join(parts)


class NamingAnalyzer:
    """
    Name-based evidence for relationships

    Usage:
        naming = NamingAnalyzer()
        naming.reference_score("user_id", "users", "id")        # 1.0
        naming.find_matching_tables("owner_user_id", ["users"]) # [("users", 0.7)]
    """

    def stems(self, column_name: str) -> List[str]:
        """Candidate entity stems a column name refers to"""
        lowered = column_name.lower()
        found: List[str] = []
        for pattern, extract in FK_PATTERNS:
            match = pattern.match(lowered)
            if match:
                stem = extract(match).strip("_")
                if stem and stem not in found:
                    found.append(stem)
        return found

    def _stem_score(self, stem: str, table_name: str) -> float:
        table = table_name.lower()
        if stem == table:
            return EXACT_MATCH
        if IRREGULAR_PLURALS.get(stem) == table:
            return IRREGULAR_MATCH
        if pluralize(stem) == table or singularize(table) == stem:
            return PLURAL_MATCH
        return 0.0

    def table_score(self, column_name: str, table_name: str) -> float:
        """How strongly ``column_name`` names ``table_name`` (0 when it does not)"""
        best = 0.0
        for stem in self.stems(column_name):
            score = self._stem_score(stem, table_name)
            if score == 0.0 and "_" in stem:
                # Compound: owner_user_id -> user
                tail = stem.rsplit("_", 1)[1]
                if self._stem_score(tail, table_name) > 0:
                    score = COMPOUND_MATCH
            best = max(best, score)
        return best

    def reference_score(self, column_name: str, table_name: str,
                        target_column: Optional[str] = None) -> float:
        """
        Score a reference from ``column_name`` to ``table_name.target_column``.

        A column named exactly like the target's key (e.g. both ``user_id``) counts
        as a strong match even without a table-name pattern.
        """
        score = self.table_score(column_name, table_name)
        if target_column and target_column.lower() == column_name.lower() and target_column.lower() != "id":
            score = max(score, PLURAL_MATCH)
        return score

    def find_matching_tables(self, column_name: str,
                             table_names: Iterable[str]) -> List[Tuple[str, float]]:
        """Tables the column name points at, highest score first"""
        matches = []
        for table in table_names:
            score = self.table_score(column_name, table)
            if score > 0:
                matches.append((table, score))
        matches.sort(key=lambda m: m[1], reverse=True)
        return matches
