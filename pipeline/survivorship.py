"""
Survivorship: merge conformed records that share a business key into one
golden record.

Per attribute the winner is the non-null value whose source ranks highest
in the configured priority list for that attribute (entity default list
otherwise; unlisted sources rank last). Ties go to the most recent
extraction timestamp, then to source-system name, then to the value itself,
so the result never depends on arrival order. Only the latest extract of
each source takes part.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from schemas.config import PipelineConfig, SurvivorshipRule
from schemas.records import CleanRecord, GoldenRecord, canonical_json

logger = logging.getLogger(__name__)

GroupKey = Tuple[str, str]

_EPOCH = datetime(1970, 1, 1)


def group_by_business_key(records: Iterable[CleanRecord]) -> Dict[GroupKey, List[CleanRecord]]:
    """
    Barrier: collect every record for each (entity type, business key).

    Groups come back in sorted key order.
    """
    groups: Dict[GroupKey, List[CleanRecord]] = defaultdict(list)
    for record in records:
        groups[(record.entity_type, record.business_key)].append(record)
    return {key: groups[key] for key in sorted(groups)}


def latest_per_source(records: List[CleanRecord]) -> List[CleanRecord]:
    """
    Keep only each source system's most recent extract of the key.

    An older extract never fills an attribute its own source has since
    cleared; fallback happens across source systems only.
    """
    newest: Dict[str, datetime] = {}
    for record in records:
        if record.source_system not in newest or record.extracted_at > newest[record.source_system]:
            newest[record.source_system] = record.extracted_at
    return [r for r in records if r.extracted_at == newest[r.source_system]]


class SurvivorshipResolver:

    def __init__(self, config: PipelineConfig):
        self.config = config

    def resolve(
        self,
        entity_type: str,
        business_key: str,
        records: List[CleanRecord]
    ) -> GoldenRecord:
        """
        Resolve one business key's records into a golden record.

        Pure function of the input set: any permutation of ``records``
        yields an identical GoldenRecord.

        Raises:
            ValueError: Empty input, or a record for another entity/key
        """
        if not records:
            raise ValueError(f"No records to resolve for {entity_type}/{business_key}")

        for record in records:
            if record.entity_type != entity_type or record.business_key != business_key:
                raise ValueError(
                    f"Record for {record.entity_type}/{record.business_key} "
                    f"passed to resolve {entity_type}/{business_key}"
                )

        records = latest_per_source(records)
        rule = self.config.survivorship_for(entity_type)
        attribute_names = sorted({name for record in records for name in record.attributes})

        attributes: Dict[str, Any] = {}
        provenance: Dict[str, Optional[str]] = {}

        for name in attribute_names:
            winner = self._select(name, records, rule)
            if winner is None:
                attributes[name] = None
                provenance[name] = None
            else:
                attributes[name] = winner.attributes[name]
                provenance[name] = winner.source_system

        return GoldenRecord(
            entity_type=entity_type,
            business_key=business_key,
            attributes=attributes,
            provenance=provenance,
        )

    def resolve_all(self, records: Iterable[CleanRecord]) -> List[GoldenRecord]:
        golden = [
            self.resolve(entity_type, business_key, group)
            for (entity_type, business_key), group in group_by_business_key(records).items()
        ]
        logger.info(f"Resolved {len(golden)} golden records")
        return golden

    @staticmethod
    def _select(
        attribute: str,
        records: List[CleanRecord],
        rule: SurvivorshipRule
    ) -> Optional[CleanRecord]:
        priority = rule.priority_for(attribute)
        rank = {source: index for index, source in enumerate(priority)}
        unlisted = len(priority)

        candidates = [r for r in records if r.attributes.get(attribute) is not None]
        if not candidates:
            return None

        def sort_key(record: CleanRecord):
            return (
                rank.get(record.source_system, unlisted),
                -(record.extracted_at - _EPOCH).total_seconds(),
                record.source_system,
                canonical_json(record.attributes[attribute]),
            )

        return min(candidates, key=sort_key)
