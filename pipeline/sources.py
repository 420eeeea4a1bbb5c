"""
Source readers: deliver raw rows for one (source system, entity type).

Readers never interpret values; every cell is handed over as a string (or
None when empty) in the source's column order.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
import logging

import pandas as pd
import yaml

from core.exceptions import ConfigurationError
from models.base import utcnow
from schemas.records import RawRecord, to_naive_utc

logger = logging.getLogger(__name__)


class SourceReader(ABC):
    """
    Abstract base class for raw row sources.

    Subclasses implement ``read``; rows are numbered from 1 in delivery order.
    """

    def __init__(
        self,
        source_system: str,
        entity_type: str,
        extracted_at: Optional[datetime] = None
    ):
        self.source_system = source_system
        self.entity_type = entity_type
        self.extracted_at = to_naive_utc(extracted_at) if extracted_at else utcnow()

    @abstractmethod
    async def read(self) -> List[RawRecord]:
        """Return the extract as an ordered list of RawRecord."""
        pass

    def _record(self, row_number: int, columns: Dict[str, Any]) -> RawRecord:
        return RawRecord(
            source_system=self.source_system,
            entity_type=self.entity_type,
            extracted_at=self.extracted_at,
            columns=columns,
            row_number=row_number,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__}({self.source_system}/{self.entity_type})>"


class InMemorySource(SourceReader):
    """Rows handed over as mappings; used by tests and programmatic callers."""

    def __init__(
        self,
        source_system: str,
        entity_type: str,
        rows: Iterable[Dict[str, Any]],
        extracted_at: Optional[datetime] = None
    ):
        super().__init__(source_system, entity_type, extracted_at)
        self.rows = list(rows)

    async def read(self) -> List[RawRecord]:
        return [self._record(i, row) for i, row in enumerate(self.rows, start=1)]


class CSVSource(SourceReader):
    """
    Read a CSV extract with pandas.

    All columns are read as strings and pandas' NA inference is disabled, so
    "NA" or "null" reach the conformer untouched; empty cells become None.
    """

    def __init__(
        self,
        source_system: str,
        entity_type: str,
        file_path: Union[str, Path],
        extracted_at: Optional[datetime] = None,
        encoding: str = "utf-8",
        delimiter: str = ","
    ):
        self.file_path = Path(file_path)
        if extracted_at is None and self.file_path.exists():
            extracted_at = datetime.fromtimestamp(self.file_path.stat().st_mtime, tz=timezone.utc)
        super().__init__(source_system, entity_type, extracted_at)
        self.encoding = encoding
        self.delimiter = delimiter

    async def read(self) -> List[RawRecord]:
        if not self.file_path.exists():
            logger.warning(f"CSV file not found: {self.file_path}")
            return []

        logger.info(f"Reading CSV from {self.file_path}")

        df = pd.read_csv(
            self.file_path,
            dtype=str,
            keep_default_na=False,
            encoding=self.encoding,
            sep=self.delimiter,
        )
        df.columns = df.columns.str.strip()

        records = [
            self._record(i, {column: (value if value != "" else None) for column, value in row.items()})
            for i, row in enumerate(df.to_dict(orient="records"), start=1)
        ]

        logger.info(f"Read {len(records)} records from CSV")
        return records


def load_source_manifest(path: Union[str, Path]) -> List[SourceReader]:
    """
    Build CSV readers from a YAML manifest::

        sources:
          - {source_system: crm, entity_type: customer, path: data/crm_customers.csv}

    Relative paths resolve against the manifest's directory.

    Raises:
        ConfigurationError: Missing or malformed manifest
    """
    manifest_path = Path(path)
    if not manifest_path.exists():
        raise ConfigurationError(f"Source manifest not found: {manifest_path}", context={"path": str(manifest_path)})

    try:
        with open(manifest_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            "Source manifest is not valid YAML",
            context={"path": str(manifest_path)},
            original_exception=e
        )

    readers: List[SourceReader] = []
    for entry in data.get("sources", []):
        try:
            file_path = Path(entry["path"])
            if not file_path.is_absolute():
                file_path = manifest_path.parent / file_path
            readers.append(CSVSource(
                source_system=entry["source_system"],
                entity_type=entry["entity_type"],
                file_path=file_path,
                encoding=entry.get("encoding", "utf-8"),
                delimiter=entry.get("delimiter", ","),
            ))
        except (KeyError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid source manifest entry: {entry!r}",
                context={"path": str(manifest_path)},
                original_exception=e
            )
    return readers
