"""Continuity conflict detection over evidence-backed claims."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .schemas import LIVE_CLAIM_STATUSES, ClaimRecord, EntityRecord, EvidenceSpan
from .storage import SQLiteStore


logger = logging.getLogger(__name__)

ISSUE_TYPE = "continuity"


def _number_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def normalize_value_key(value_json: str) -> str:
    """Comparison key: strings lowercased, numbers stringified, the rest canonical JSON.

    Surrounding whitespace is significant, so ``"north star"`` and
    ``"north star "`` produce different keys.
    """
    try:
        value = json.loads(value_json)
    except (TypeError, ValueError):
        return value_json
    if isinstance(value, str):
        return value.lower()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _number_text(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def display_value(value_json: str) -> str:
    try:
        value = json.loads(value_json)
    except (TypeError, ValueError):
        return value_json
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _number_text(value)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


@dataclass
class ContinuityConflict:
    entity: EntityRecord
    field: str
    first: ClaimRecord
    second: ClaimRecord
    first_evidence: Optional[EvidenceSpan]
    second_evidence: Optional[EvidenceSpan]
    canon_disputed: bool = False

    @property
    def severity(self) -> str:
        return "high" if self.canon_disputed else "medium"

    @property
    def title(self) -> str:
        return (
            f"Did {self.entity.display_name}'s {self.field} change from "
            f"{display_value(self.first.value_json)} to {display_value(self.second.value_json)}?"
        )

    @property
    def description(self) -> str:
        name = self.entity.display_name
        if self.severity == "high":
            return (
                f"Confirmed canon and draft evidence disagree for {name} ({self.field}). "
                "Please choose which value is canonical."
            )
        return (
            f"Conflicting evidence-backed values were found for {name} ({self.field}). "
            "Please resolve which one is canonical."
        )


class ContinuityChecker:
    """Raises one issue per (entity, field) that holds two or more distinct values.

    Only the first two values are named in an issue. Severity is ``high`` when
    any confirmed value disagrees with any draft value for the field.

    An incremental run clears every continuity issue citing a chunk that backs
    one of the targeted entities, including issues about other entities in
    that chunk. Those are raised again only by a full run.
    """

    def __init__(self, store: SQLiteStore):
        self.store = store

    def run(self, project_id: str, entity_ids: Optional[Sequence[str]] = None) -> int:
        targets = list(entity_ids or [])
        if targets:
            chunk_ids = self.store.list_evidence_chunk_ids_for_entities(targets)
            self.store.delete_issues_by_type_and_chunk_ids(project_id, ISSUE_TYPE, chunk_ids)
            wanted = set(targets)
            entities = [e for e in self.store.list_entities(project_id) if e.id in wanted]
        else:
            self.store.clear_issues_by_type(project_id, ISSUE_TYPE)
            entities = self.store.list_entities(project_id)

        raised = 0
        for entity in entities:
            for conflict in self.find_conflicts(entity):
                self._raise(project_id, conflict)
                raised += 1
        logger.info(
            "Continuity scan (%s) checked %d entities, raised %d issues",
            "incremental" if targets else "full",
            len(entities),
            raised,
        )
        return raised

    def find_conflicts(self, entity: EntityRecord) -> List[ContinuityConflict]:
        by_field: Dict[str, List[ClaimRecord]] = {}
        for claim in self.store.list_claims_for_entity(entity.id):
            if claim.status not in LIVE_CLAIM_STATUSES:
                continue
            by_field.setdefault(claim.field, []).append(claim)

        conflicts: List[ContinuityConflict] = []
        for field_name, claims in by_field.items():
            evidence: Dict[str, List[EvidenceSpan]] = {}
            distinct: Dict[str, ClaimRecord] = {}
            for claim in claims:
                spans = self.store.list_evidence_for_claim(claim.id)
                if not spans:
                    continue
                evidence[claim.id] = spans
                # A later claim stands for its value; the value keeps its first-seen position.
                distinct[normalize_value_key(claim.value_json)] = claim
            if len(distinct) < 2:
                continue

            representatives = list(distinct.values())
            statuses = {claim.status == "confirmed" for claim in representatives}
            first, second = representatives[:2]
            conflicts.append(
                ContinuityConflict(
                    entity=entity,
                    field=field_name,
                    first=first,
                    second=second,
                    first_evidence=evidence[first.id][0],
                    second_evidence=evidence[second.id][0],
                    canon_disputed=statuses == {True, False},
                )
            )
        return conflicts

    def _raise(self, project_id: str, conflict: ContinuityConflict) -> None:
        issue = self.store.insert_issue(
            project_id,
            ISSUE_TYPE,
            conflict.severity,
            conflict.title,
            conflict.description,
        )
        for span in (conflict.first_evidence, conflict.second_evidence):
            if span is not None:
                self.store.insert_issue_evidence(issue.id, span)


def run_continuity_checks(
    store: SQLiteStore, project_id: str, entity_ids: Optional[Sequence[str]] = None
) -> int:
    return ContinuityChecker(store).run(project_id, entity_ids)
