# -*- coding: utf-8 -*-
"""
Resolution handlers.

One handler per (conflict type, resolution action). A handler does two
things:

* ``decide``: validates a resolve request and fills in the decision
  (status, survivor, discarded side, merge provenance);
* ``contribute``: at commit time, adds the decision's effects to the
  package's ``CommitPlan``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from models.conflict import ConflictResolution, ConflictStatus, ConflictType, ResolutionAction
from models.staging import ENTITY_REFERENCES, StagingEntityType
from services.exceptions import ValidationError

# A survivor/loser reference: ("staging", staging_row_id) or ("production", entity_id)
SideRef = Tuple[str, str]
STAGING = "staging"
PRODUCTION = "production"

# Bookkeeping fields never offered in a merge
_NON_MERGEABLE = {
    'id', 'original_id', 'data', 'source_package_id', 'superseded_by',
    'created_at', 'updated_at', 'family_name_norm', 'claim_number',
}


@dataclass
class ResolveRequest:
    """What a reviewer asked for."""
    action: ResolutionAction
    reason: str
    survivor_id: Optional[str] = None
    # field -> "first" | "second"; fields not listed come from the survivor
    field_choices: Dict[str, str] = field(default_factory=dict)
    notes: Optional[str] = None


@dataclass
class CommitPlan:
    """Effects of all decided conflicts of one package."""
    # Losing staging row id -> survivor
    redirects: Dict[str, SideRef] = field(default_factory=dict)
    # (entity type, losing production id, survivor)
    supersessions: List[Tuple[StagingEntityType, str, SideRef]] = field(default_factory=list)
    # Survivor -> field values chosen in a merge
    overrides: Dict[SideRef, Dict[str, Any]] = field(default_factory=dict)
    # Production survivor id -> its entity type
    production_types: Dict[str, StagingEntityType] = field(default_factory=dict)
    resolutions_applied: int = 0
    merges: int = 0

    def resolve_staging(self, staging_id: str) -> SideRef:
        """Follow redirects from a staging row to its final survivor."""
        current: SideRef = (STAGING, staging_id)
        seen = set()
        while current[0] == STAGING and current[1] in self.redirects and current[1] not in seen:
            seen.add(current[1])
            current = self.redirects[current[1]]
        return current

    def overrides_for(self, side: SideRef) -> Dict[str, Any]:
        return self.overrides.get(side, {})


def side_of(conflict: ConflictResolution, entity_id: str) -> SideRef:
    if entity_id == conflict.second_entity_id and conflict.second_is_production:
        return (PRODUCTION, entity_id)
    return (STAGING, entity_id)


class ResolutionHandler:
    """Base handler: closes the conflict without touching data."""

    final_status = ConflictStatus.RESOLVED

    def __init__(self, conflict_type: ConflictType, action: ResolutionAction):
        self.conflict_type = conflict_type
        self.action = action

    def decide(self, conflict: ConflictResolution, request: ResolveRequest,
               first: Dict[str, Any], second: Dict[str, Any]) -> None:
        conflict.status = self.final_status
        conflict.resolution_action = self.action
        conflict.resolution_reason = request.reason
        conflict.resolution_notes = request.notes

    def contribute(self, conflict: ConflictResolution, plan: CommitPlan) -> None:
        plan.resolutions_applied += 1


class KeepBothHandler(ResolutionHandler):
    """Both entities stay distinct."""


class IgnoreHandler(ResolutionHandler):
    """False positive. The pair stays recorded so detection skips it."""

    final_status = ConflictStatus.IGNORED


class DiscardHandler(ResolutionHandler):
    """KeepFirst / KeepSecond: the other side is dropped outright."""

    def survivor(self, conflict: ConflictResolution, request: ResolveRequest) -> str:
        if self.action == ResolutionAction.KEEP_FIRST:
            return conflict.first_entity_id
        return conflict.second_entity_id

    def decide(self, conflict, request, first, second):
        super().decide(conflict, request, first, second)
        conflict.survivor_entity_id = self.survivor(conflict, request)
        conflict.discarded_entity_id = conflict.other_side(conflict.survivor_entity_id)

    def contribute(self, conflict, plan):
        super().contribute(conflict, plan)
        survivor = side_of(conflict, conflict.survivor_entity_id)
        loser = side_of(conflict, conflict.discarded_entity_id)
        if loser[0] == STAGING:
            plan.redirects[loser[1]] = survivor
        else:
            plan.supersessions.append((StagingEntityType(conflict.entity_type), loser[1], survivor))


class MergeHandler(DiscardHandler):
    """
    Survivor keeps its identity; chosen fields may come from either side.
    The per-field provenance is stored in ``merge_mapping``.
    """

    def survivor(self, conflict, request):
        survivor = request.survivor_id or conflict.first_entity_id
        if survivor not in (conflict.first_entity_id, conflict.second_entity_id):
            raise ValidationError(
                f"Survivor {survivor} is not part of conflict {conflict.conflict_number}",
                field="survivor_id")
        return survivor

    def decide(self, conflict, request, first, second):
        super().decide(conflict, request, first, second)
        survivor_side = "first" if conflict.survivor_entity_id == conflict.first_entity_id else "second"
        sources = {"first": first, "second": second}

        unknown = [f for f, s in request.field_choices.items() if s not in sources]
        if unknown:
            raise ValidationError("Field choices must be 'first' or 'second'",
                                  field="field_choices", errors=unknown)

        references = {ref.name for ref in ENTITY_REFERENCES[StagingEntityType(conflict.entity_type)]}
        mapping = {}
        for name in sorted(set(first) | set(second)):
            if name in _NON_MERGEABLE or name in references:
                continue
            source = request.field_choices.get(name, survivor_side)
            value = sources[source].get(name)
            if value is None and source != survivor_side:
                continue
            mapping[name] = {'source': source, 'value': value}
        conflict.merge_mapping = mapping

    def contribute(self, conflict, plan):
        super().contribute(conflict, plan)
        plan.merges += 1
        survivor = side_of(conflict, conflict.survivor_entity_id)
        survivor_side = "first" if conflict.survivor_entity_id == conflict.first_entity_id else "second"
        changed = {
            name: entry['value'] for name, entry in conflict.merge_mapping.items()
            if entry.get('source') != survivor_side
        }
        if changed:
            plan.overrides.setdefault(survivor, {}).update(changed)
            if survivor[0] == PRODUCTION:
                plan.production_types[survivor[1]] = StagingEntityType(conflict.entity_type)


class RejectHandler(ResolutionHandler):
    """Registered for combinations that make no sense (merging two claims)."""

    def __init__(self, conflict_type, action, message: str):
        super().__init__(conflict_type, action)
        self.message = message

    def decide(self, conflict, request, first, second):
        raise ValidationError(self.message, field="action")


def _build_registry() -> Dict[Tuple[ConflictType, ResolutionAction], ResolutionHandler]:
    registry: Dict[Tuple[ConflictType, ResolutionAction], ResolutionHandler] = {}
    for conflict_type in ConflictType:
        registry[(conflict_type, ResolutionAction.KEEP_BOTH)] = KeepBothHandler(conflict_type, ResolutionAction.KEEP_BOTH)
        registry[(conflict_type, ResolutionAction.IGNORE)] = IgnoreHandler(conflict_type, ResolutionAction.IGNORE)
        registry[(conflict_type, ResolutionAction.KEEP_FIRST)] = DiscardHandler(conflict_type, ResolutionAction.KEEP_FIRST)
        registry[(conflict_type, ResolutionAction.KEEP_SECOND)] = DiscardHandler(conflict_type, ResolutionAction.KEEP_SECOND)
    for conflict_type in (ConflictType.PERSON_DUPLICATE, ConflictType.PROPERTY_DUPLICATE):
        registry[(conflict_type, ResolutionAction.MERGE)] = MergeHandler(conflict_type, ResolutionAction.MERGE)
    registry[(ConflictType.CLAIM_CONFLICT, ResolutionAction.MERGE)] = RejectHandler(
        ConflictType.CLAIM_CONFLICT, ResolutionAction.MERGE,
        "Claims cannot be merged; keep one, keep both or ignore")
    return registry


HANDLERS = _build_registry()


def handler_for(conflict_type: ConflictType, action: ResolutionAction) -> ResolutionHandler:
    try:
        return HANDLERS[(conflict_type, action)]
    except KeyError:
        raise ValidationError(
            f"No handler for {conflict_type.value} / {action.value}", field="action") from None
